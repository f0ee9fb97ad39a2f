# Standard library
import datetime
from email.utils import parsedate_to_datetime
from http.cookies import CookieError, SimpleCookie
from urllib.parse import urlparse

# Application modules
from txcasclient.interface import ICookieJar

# External modules
from twisted.python import log
from zope.interface import implementer


def _now():
    return datetime.datetime.now(datetime.timezone.utc)

def _domain_matches(host, domain):
    host = host.lower()
    domain = domain.lower()
    if domain.startswith('.'):
        return host == domain[1:] or host.endswith(domain)
    return host == domain

def _path_matches(path, cookie_path):
    if path == '':
        path = '/'
    if cookie_path == '/' or path == cookie_path:
        return True
    if not path.startswith(cookie_path):
        return False
    return cookie_path.endswith('/') or path[len(cookie_path)] == '/'


@implementer(ICookieJar)
class SessionCookieJar(object):
    """
    Cookies received from proxied services, kept in a plain dict so
    they persist with the session.

    Each entry is keyed by `name;domain;path` and holds the cookie
    value, domain, path, secure flag and expiry (ISO timestamp or None).
    """

    def __init__(self, storage, _debug=False):
        self.storage = storage
        self._debug = _debug

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def storeCookies(self, url, response_headers):
        parts = urlparse(url)
        host = parts.hostname or ''
        for line in response_headers:
            name, sep, value = line.partition(':')
            if sep == '' or name.strip().lower() != 'set-cookie':
                continue
            self._storeCookie(host, value.strip())

    def _storeCookie(self, host, header):
        cookie = SimpleCookie()
        try:
            cookie.load(header)
        except CookieError as ex:
            self.debug("[DEBUG][SessionCookieJar] Ignoring cookie `%s': %s" % (header, ex))
            return
        for name, morsel in cookie.items():
            domain = morsel['domain']
            if domain:
                if not domain.startswith('.'):
                    domain = '.' + domain
            else:
                domain = host
            path = morsel['path'] or '/'
            key = '%s;%s;%s' % (name, domain.lower(), path)
            expires = None
            if morsel['max-age'] != '':
                try:
                    max_age = int(morsel['max-age'])
                except ValueError:
                    max_age = None
                if max_age is not None:
                    expires = _now() + datetime.timedelta(seconds=max_age)
            elif morsel['expires'] != '':
                try:
                    expires = parsedate_to_datetime(morsel['expires'])
                except (TypeError, ValueError):
                    expires = None
                if expires is not None and expires.tzinfo is None:
                    expires = expires.replace(tzinfo=datetime.timezone.utc)
            if expires is not None and expires <= _now():
                self.storage.pop(key, None)
                continue
            self.storage[key] = {
                'name': name,
                'value': morsel.value,
                'domain': domain,
                'path': path,
                'secure': bool(morsel['secure']),
                'expires': expires.isoformat() if expires is not None else None,
            }

    def getCookies(self, url):
        parts = urlparse(url)
        host = parts.hostname or ''
        path = parts.path
        is_secure = (parts.scheme == 'https')
        now = _now()
        cookies = {}
        for key in list(self.storage.keys()):
            entry = self.storage[key]
            expires = entry['expires']
            if expires is not None and datetime.datetime.fromisoformat(expires) <= now:
                del self.storage[key]
                continue
            if entry['secure'] and not is_secure:
                continue
            if not _domain_matches(host, entry['domain']):
                continue
            if not _path_matches(path, entry['path']):
                continue
            cookies[entry['name']] = entry['value']
        return cookies
