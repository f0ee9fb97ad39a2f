# Standard library
import configparser
import io
import os.path
import sys

# External modules
from twisted.plugin import getPlugins

def load_defaults(defaults):
    """
    Load default settings.
    """
    lines = []
    if defaults is None:
        defaults = {}
    for section, opts in defaults.items():
        lines.append("[%s]" % section)
        for opt, value in opts.items():
            lines.append("%s = %s" % (opt, value))
    settings = '\n'.join(lines)
    del lines
    scp = configparser.ConfigParser(interpolation=None)
    buf = io.StringIO(settings)
    scp.read_file(buf)
    return scp

def load_settings(config_basename, defaults=None, syspath=None):
    """
    Load settings.
    """
    if defaults is None:
        defaults = {}
    scp = load_defaults(defaults)
    appdir = os.path.dirname(os.path.dirname(__file__))
    paths = []
    if syspath is not None:
        paths.append(os.path.join(syspath, "%s.cfg" % config_basename))
    paths.append(os.path.expanduser("~/%src" % config_basename))
    paths.append(os.path.join(appdir, "%s.cfg" % config_basename))
    scp.read(paths)
    return scp

def export_settings_to_dict(scp):
    """
    Convert a config parser into a dict of dicts keyed by section.
    """
    settings = {}
    for section in scp.sections():
        settings[section] = dict(scp.items(section))
    return settings

def has_options(scp, opts):
    """
    Check if a config parser has the indicated options.
    """
    for section, options in opts.items():
        if not scp.has_section(section):
            return False
        for opt in options:
            if not scp.has_option(section, opt):
                return False
    return True

def get_bool(value):
    """
    Interpret a setting value as a boolean.
    """
    if isinstance(value, bool):
        return value
    value = str(value).strip().lower()
    if value in ('1', 'yes', 'true', 'on'):
        return True
    if value in ('0', 'no', 'false', 'off', ''):
        return False
    raise ValueError("'%s' is not a boolean value." % value)

def parse_argstring(argstring):
    """
    Parse a colon-separated key=value plugin argument string.
    """
    argdict = {}
    if argstring.strip() == "":
        return argdict
    for part in argstring.split(':'):
        key, sep, value = part.partition('=')
        if sep == '':
            raise ValueError("Plugin argument '%s' is not of the form key=value." % part)
        argdict[key.strip()] = value.strip()
    return argdict

def get_plugin_factory(tag, iface):
    """
    Return the first plugin factory for interface `iface` whose
    `tag` matches, or None.
    """
    for factory in getPlugins(iface):
        if getattr(factory, 'tag', None) == tag:
            return factory
    return None

def dump_settings(scp, stm=None, redact=('passwd', 'password')):
    """
    Write all settings to `stm` (default stderr), masking secrets.
    """
    if stm is None:
        stm = sys.stderr
    for section in scp.sections():
        for option in scp.options(section):
            value = scp.get(section, option)
            if option in redact:
                value = '*******'
            stm.write("%s, %s: %s\n" % (section, option, value))
