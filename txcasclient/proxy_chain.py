# Standard library
import re
# Application modules
from txcasclient.interface import IProxyChain
# External modules
from twisted.python import log
from zope.interface import implementer

# PHP-style trailing modifiers understood by RegexPattern.  Greediness
# does not change whether a pattern matches, so `U` maps to nothing.
_modifier_flags = {
    'i': re.I,
    'x': re.X,
    's': re.S,
    'm': re.M,
    'u': 0,
    'S': 0,
    'X': 0,
    'U': 0,
    'A': 0,
}

_regex_pattern = re.compile(
    r'^/.*/[%s]*$' % ''.join(_modifier_flags), re.S)


class LiteralPattern(object):
    """
    Case-insensitive prefix match against a proxy URL.
    """
    def __init__(self, prefix):
        self.prefix = prefix
        self._folded = prefix.lower()

    def matches(self, proxy_url):
        return proxy_url.lower().startswith(self._folded)

    def __repr__(self):
        return "LiteralPattern(%r)" % self.prefix


class RegexPattern(object):
    """
    A `/pattern/modifiers` regular expression searched for in a proxy URL.
    The `A` modifier anchors the match at the start of the URL.
    """
    def __init__(self, pattern, modifiers=""):
        self.pattern = pattern
        self.modifiers = modifiers
        flags = 0
        for m in modifiers:
            if m == 'A':
                continue
            if m not in _modifier_flags:
                raise ValueError(
                    "Unsupported regular expression modifier '%s' in proxy chain." % m)
            flags |= _modifier_flags[m]
        self._anchored = ('A' in modifiers)
        self._regex = re.compile(pattern, flags)

    def matches(self, proxy_url):
        if self._anchored:
            return self._regex.match(proxy_url) is not None
        return self._regex.search(proxy_url) is not None

    def __repr__(self):
        return "RegexPattern(%r, %r)" % (self.pattern, self.modifiers)


def parse_pattern(search):
    """
    Turn a chain element into a LiteralPattern or, when it looks like
    `/.../modifiers`, a RegexPattern.
    """
    if _regex_pattern.match(search):
        pos = search.rindex('/')
        return RegexPattern(search[1:pos], search[pos + 1:])
    return LiteralPattern(search)


@implementer(IProxyChain)
class ProxyChain(object):
    """
    An acceptable sequence of proxies.

    Proxies are listed in reverse, from the service back to the user.
    If a user hits service A and is proxied via B to service C, the
    chain accepted by C is [B, A].
    """
    def __init__(self, chain, _debug=False):
        self.chain = [parse_pattern(search) for search in chain]
        self._debug = _debug

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def isSizeValid(self, proxies):
        return len(self.chain) == len(proxies)

    def matches(self, proxies):
        proxies = list(proxies)
        if not self.isSizeValid(proxies):
            self.debug("[DEBUG][ProxyChain] Proxy chain skipped: size mismatch.")
            return False
        for pattern, proxy_url in zip(self.chain, proxies):
            if not pattern.matches(proxy_url):
                self.debug("[DEBUG][ProxyChain] No match %r != '%s'." % (pattern, proxy_url))
                return False
        self.debug("[DEBUG][ProxyChain] Proxy chain matches.")
        return True


class TrustedProxyChain(ProxyChain):
    """
    A chain that also accepts any proxies added beyond the ones it
    names.
    """
    def isSizeValid(self, proxies):
        return len(self.chain) <= len(proxies)


@implementer(IProxyChain)
class AnyProxyChain(object):
    """
    Accepts every proxy list.
    """
    def matches(self, proxies):
        return True


class AllowedProxyChains(object):
    """
    The proxy chains a service accepts, evaluated disjunctively.
    """
    def __init__(self, _debug=False):
        self._chains = []
        self._debug = _debug

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def isProxyingAllowed(self):
        return len(self._chains) > 0

    def allowProxyChain(self, chain):
        if not IProxyChain.providedBy(chain):
            raise TypeError("%r does not provide IProxyChain." % chain)
        self._chains.append(chain)

    def isProxyListAllowed(self, proxies):
        if len(proxies) == 0:
            self.debug("[DEBUG][ProxyChain] No proxies were found in the response.")
            return True
        if not self.isProxyingAllowed():
            self.debug("[DEBUG][ProxyChain] Proxies are not allowed.")
            return False
        return self.contains(proxies)

    def contains(self, proxies):
        for n, chain in enumerate(self._chains):
            self.debug("[DEBUG][ProxyChain] Checking chain %d." % n)
            if chain.matches(proxies):
                return True
        self.debug("[DEBUG][ProxyChain] No proxy chain matches.")
        return False
