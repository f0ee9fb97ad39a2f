
# Standard library
import inspect

# Application modules
from txcasclient.exceptions import BadRequestError

# External modules
import treq
from twisted.python import log

def log_cas_event(label, attribs):
    """
    Log a CAS event.
    """
    parts = []
    for k,v in attribs:
        parts.append('''%s="%s"''' % (k, v))
    tail = ' '.join(parts)
    log.msg('''[INFO][CAS] label="%s" %s''' % (label, tail))

def http_status_filter(response, allowed, ex, msg=None, include_resp_text=True):
    """
    Checks the response status and determines if it is in one of the
    allowed ranges.  If not, it raises `ex()`.

    `ex` is a callable that results in an Exception to be raised,
        (typically an exception class).
    `allowed` is a sequence of (start, end) valid status ranges.
    """
    code = response.code
    in_range = False
    for start_range, end_range in allowed:
        if code >= start_range and code <= end_range:
            in_range = True
            break
    if not in_range:
        def raise_error(body, ex):
            ex_msg = []
            if msg is not None:
                ex_msg.append(msg)
            if include_resp_text:
                ex_msg.append(body.decode('utf-8', 'replace'))
            text = '\n'.join(ex_msg)
            if text != "":
                raise ex(text)
            else:
                raise ex()
        # Need to still deliver the response body or Twisted make
        # hang.
        d = treq.content(response)
        d.addCallback(raise_error, ex)
        return d
    return response

def get_missing_args(func, provided, exclude=None):
    """
    Names of the required arguments of `func` missing from `provided`.
    """
    if exclude is None:
        exclude = set([])
    argspec = inspect.getfullargspec(func)
    defaults = argspec.defaults or []
    defaults_count = len(defaults)
    if defaults_count > 0:
        required = argspec.args[:-defaults_count]
    else:
        required = argspec.args
    missing = [arg for arg in required if not arg in provided and arg not in exclude]
    return missing

def filter_args(func, provided, exclude=None):
    """
    Removes keys from mapping `provided` that are not included in the
    arglist for `func`.
    """
    if exclude is None:
        exclude = set([])
    arg_set = set([x for x in inspect.getfullargspec(func).args if x not in exclude])
    keys = list(provided.keys())
    for k in keys:
        if not k in arg_set:
            del provided[k]

def format_plugin_help_list(factories, stm):
     """
     Show plugin list with brief usage..
     """
     # Figure out the right width for our columns
     firstLength = 0
     for factory in factories:
         if len(factory.tag) > firstLength:
             firstLength = len(factory.tag)
     formatString = '  %%-%is\t%%s\n' % firstLength
     stm.write(formatString % ('Plugin', 'ArgString format'))
     stm.write(formatString % ('======', '================'))
     for factory in factories:
         stm.write(
             formatString % (factory.tag, factory.opt_usage))
     stm.write('\n')

def get_single_param_or_default(request, param, default=None):
    """
    Return the single value of `param` in request.args as text, or
    `default` if it is absent.

    If the named parameter exists multiple times, this function raises
    a txcasclient.exceptions.BadRequestError.
    """
    args = request.args
    key = param.encode('utf-8')
    if not key in args:
        return default
    value_list = args[key]
    if len(value_list) != 1:
        raise BadRequestError("Multiple values for parameter '%s' were provided." % param)
    try:
        return value_list[0].decode('utf-8')
    except UnicodeDecodeError:
        raise BadRequestError("Parameter '%s' is not valid UTF-8." % param)

def get_header(request, name):
    """
    Return a request header as text, or None.
    """
    value = request.getHeader(name)
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode('latin-1')
    return value
