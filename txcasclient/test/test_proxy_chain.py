
# Application modules
from txcasclient.proxy_chain import (
    AllowedProxyChains, AnyProxyChain, LiteralPattern, ProxyChain,
    RegexPattern, TrustedProxyChain, parse_pattern)
# External modules
from twisted.trial.unittest import TestCase


class PatternTest(TestCase):

    def test_literal_is_case_insensitive_prefix(self):
        pattern = parse_pattern('https://Proxy.example.net/')
        self.assertIsInstance(pattern, LiteralPattern)
        self.assertTrue(pattern.matches('https://proxy.example.net/app/cb'))
        self.assertFalse(pattern.matches('https://other.example.net/'))

    def test_regex_pattern(self):
        pattern = parse_pattern('/^https:\\/\\/app[0-9]\\.example\\.net\\//i')
        self.assertIsInstance(pattern, RegexPattern)
        self.assertTrue(pattern.matches('https://APP1.example.net/cb'))
        self.assertFalse(pattern.matches('https://appx.example.net/cb'))

    def test_regex_search_is_unanchored(self):
        pattern = parse_pattern('/example\\.net/')
        self.assertTrue(pattern.matches('https://app.example.net/'))

    def test_regex_anchored_modifier(self):
        pattern = parse_pattern('/example/A')
        self.assertFalse(pattern.matches('https://app.example.net/'))
        self.assertTrue(pattern.matches('example.net'))

    def test_modifiers_recognised(self):
        pattern = parse_pattern('/EXAMPLE.NET/iU')
        self.assertIsInstance(pattern, RegexPattern)
        self.assertTrue(pattern.matches('https://app.example.net/'))
        pattern = parse_pattern('/app.example/s')
        self.assertIsInstance(pattern, RegexPattern)
        self.assertTrue(pattern.matches('https://app\nexample.net/'))

    def test_unknown_modifier_is_literal(self):
        self.assertIsInstance(parse_pattern('/foo/Q'), LiteralPattern)

    def test_unsupported_modifier(self):
        self.assertRaises(ValueError, RegexPattern, 'foo', 'Q')


class ProxyChainTest(TestCase):
    proxies = [
        'https://service-b.example.net/proxycb',
        'https://service-a.example.net/proxycb',
    ]

    def test_exact_chain_matches(self):
        chain = ProxyChain([
            'https://service-b.example.net/',
            '/service-a\\.example\\.net/'])
        self.assertTrue(chain.matches(self.proxies))

    def test_length_mismatch(self):
        chain = ProxyChain(['https://service-b.example.net/'])
        self.assertFalse(chain.matches(self.proxies))

    def test_position_mismatch(self):
        chain = ProxyChain([
            'https://service-a.example.net/',
            'https://service-b.example.net/'])
        self.assertFalse(chain.matches(self.proxies))

    def test_empty_chain_never_matches_proxies(self):
        chain = ProxyChain([])
        self.assertFalse(chain.matches(self.proxies))

    def test_trusted_chain_accepts_extra_proxies(self):
        chain = TrustedProxyChain(['https://service-b.example.net/'])
        self.assertTrue(chain.matches(self.proxies))
        self.assertTrue(chain.matches(self.proxies + ['https://c.example.net/']))
        self.assertFalse(chain.matches(['https://service-a.example.net/']))

    def test_trusted_chain_requires_first_entries(self):
        chain = TrustedProxyChain([
            'https://service-b.example.net/',
            'https://service-a.example.net/',
            'https://service-z.example.net/'])
        self.assertFalse(chain.matches(self.proxies))


class AllowedProxyChainsTest(TestCase):

    def test_empty_list_always_allowed(self):
        chains = AllowedProxyChains()
        self.assertTrue(chains.isProxyListAllowed([]))

    def test_no_chains_rejects_proxies(self):
        chains = AllowedProxyChains()
        self.assertFalse(chains.isProxyingAllowed())
        self.assertFalse(chains.isProxyListAllowed(['https://a.example.net/']))

    def test_any_chain(self):
        chains = AllowedProxyChains()
        chains.allowProxyChain(AnyProxyChain())
        self.assertTrue(chains.isProxyingAllowed())
        self.assertTrue(chains.isProxyListAllowed(['https://a.example.net/']))
        self.assertTrue(chains.isProxyListAllowed([
            'https://a.example.net/', 'https://b.example.net/']))

    def test_chains_are_disjunctive(self):
        chains = AllowedProxyChains()
        chains.allowProxyChain(ProxyChain(['https://a.example.net/']))
        chains.allowProxyChain(ProxyChain(['https://b.example.net/']))
        self.assertTrue(chains.isProxyListAllowed(['https://b.example.net/cb']))
        self.assertFalse(chains.isProxyListAllowed(['https://c.example.net/cb']))

    def test_reject_non_chain(self):
        chains = AllowedProxyChains()
        self.assertRaises(TypeError, chains.allowProxyChain, ['https://a.example.net/'])
