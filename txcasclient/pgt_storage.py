# Standard library
import re
# Application modules
from txcasclient.exceptions import CASConfigError, InvalidPGTIou
from txcasclient.settings import (
    export_settings_to_dict, load_settings, parse_argstring)
import txcasclient.utils
# External modules
from twisted.python import log

# Stricter than the callback check; IOUs name files and documents.
_storable_iou = re.compile(r'^PGTIOU-[.\-\w]+$')

def check_pgt_iou(pgt_iou):
    """
    Raise InvalidPGTIou unless `pgt_iou` is safe to use as a storage key.
    """
    if not isinstance(pgt_iou, str) or not _storable_iou.match(pgt_iou):
        raise InvalidPGTIou("PGT IOU '%s' has an invalid format." % pgt_iou)
    if '..' in pgt_iou:
        raise InvalidPGTIou("PGT IOU '%s' has an invalid format." % pgt_iou)
    return pgt_iou

def generate_pgt_storage(cls, section, argstring="", converters=None,
                         settings_xlate=None, secrets=('passwd', 'password')):
    """
    Create a PGT storage of type `cls` from the `section` of the client
    settings, overridden by the colon-separated key=value `argstring`.

    @param converters: Maps option names to callables that convert the
        string option values.
    @param settings_xlate: Maps option names used in the settings file
        to constructor argument names.
    """
    if converters is None:
        converters = {}
    if settings_xlate is None:
        settings_xlate = {}
    scp = load_settings('casclient', syspath='/etc/casclient')
    settings = export_settings_to_dict(scp)
    opts = {}
    for k, v in settings.get(section, {}).items():
        opts[settings_xlate.get(k, k)] = v
    try:
        for k, v in parse_argstring(argstring).items():
            opts[settings_xlate.get(k, k)] = v
    except ValueError as ex:
        raise CASConfigError("[%s] %s" % (cls.__name__, str(ex)))
    missing = txcasclient.utils.get_missing_args(cls.__init__, opts, ['self'])
    if len(missing) > 0:
        raise CASConfigError(
            "[%s] Missing the following settings: %s" % (
                cls.__name__, ', '.join(missing)))
    txcasclient.utils.filter_args(cls.__init__, opts, ['self'])
    for k, convert in converters.items():
        if k in opts:
            opts[k] = convert(opts[k])
    buf = ["[CONFIG][%s] Settings:" % cls.__name__]
    for k in sorted(opts.keys()):
        v = opts[k]
        if k in secrets:
            v = '*******'
        buf.append(" - %s: %s" % (k, v))
    log.msg('\n'.join(buf))
    return cls(**opts)
