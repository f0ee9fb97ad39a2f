
# Standard modules
from textwrap import dedent
from urllib.parse import parse_qs, urlparse
from xml.dom.minidom import parseString
# Application modules
from txcasclient.exceptions import (
    AuthenticationFailure, BadServerResponse, NoServerResponse, ProxyNotAllowed)
from txcasclient.proxy_chain import AllowedProxyChains, AnyProxyChain, ProxyChain
from txcasclient.test.fakes import FakeHTTPRequestFactory, FakeResponse
from txcasclient.validators import (
    CAS10Validator, CAS20Validator, SAML11Validator, ValidationResult,
    parseCAS10Response, parseCAS20Response, parseSAML11Response)
# External modules
from twisted.internet import defer
from twisted.trial.unittest import TestCase


def cas20Success(inner):
    return dedent('''\
        <cas:serviceResponse xmlns:cas="http://www.yale.edu/tp/cas">
            <cas:authenticationSuccess>
        %s
            </cas:authenticationSuccess>
        </cas:serviceResponse>
        ''') % inner


class CAS10ParseTest(TestCase):

    def test_yes(self):
        result = parseCAS10Response("yes\njsmith\n")
        self.assertTrue(result.validated)
        self.assertEqual(result.user, 'jsmith')
        self.assertEqual(result.attributes, {})

    def test_no(self):
        result = parseCAS10Response("no\n")
        self.assertFalse(result.validated)
        self.assertEqual(result.failure, ValidationResult.REJECTED)
        self.assertIsInstance(result.asError(), AuthenticationFailure)

    def test_malformed(self):
        result = parseCAS10Response("maybe\n")
        self.assertEqual(result.failure, ValidationResult.BAD_RESPONSE)
        self.assertIsInstance(result.asError(), BadServerResponse)


class CAS20ParseTest(TestCase):

    def test_user_is_trimmed(self):
        result = parseCAS20Response(cas20Success('<cas:user>  jsmith\n</cas:user>'))
        self.assertTrue(result.validated)
        self.assertEqual(result.user, 'jsmith')
        self.assertEqual(result.pgtIou, None)
        self.assertEqual(result.proxies, [])

    def test_nested_attributes_repeat_into_list(self):
        result = parseCAS20Response(cas20Success(dedent('''\
            <cas:user>jsmith</cas:user>
            <cas:attributes>
                <cas:memberOf>staff</cas:memberOf>
                <cas:memberOf>faculty</cas:memberOf>
                <cas:mail> jsmith@example.net </cas:mail>
            </cas:attributes>
            ''')))
        self.assertEqual(result.attributes, {
            'memberOf': ['staff', 'faculty'],
            'mail': 'jsmith@example.net'})

    def test_rubycas_flat_attributes(self):
        result = parseCAS20Response(cas20Success(dedent('''\
            <cas:user>jsmith</cas:user>
            <cas:proxyGrantingTicket>PGTIOU-1-abc</cas:proxyGrantingTicket>
            <cas:givenName>Jane</cas:givenName>
            <cas:empty>   </cas:empty>
            ''')))
        self.assertEqual(result.attributes, {'givenName': 'Jane'})
        self.assertEqual(result.pgtIou, 'PGTIOU-1-abc')

    def test_name_value_attributes(self):
        result = parseCAS20Response(cas20Success(dedent('''\
            <cas:user>jsmith</cas:user>
            <cas:attribute name="memberOf" value="staff"/>
            <cas:attribute name="mail" value="jsmith@example.net"/>
            ''')))
        self.assertEqual(result.attributes, {
            'memberOf': 'staff',
            'mail': 'jsmith@example.net'})

    def test_attribute_styles_not_merged(self):
        result = parseCAS20Response(cas20Success(dedent('''\
            <cas:user>jsmith</cas:user>
            <cas:attributes>
                <cas:mail>jsmith@example.net</cas:mail>
            </cas:attributes>
            <cas:givenName>Jane</cas:givenName>
            ''')))
        self.assertEqual(result.attributes, {'mail': 'jsmith@example.net'})

    def test_missing_user(self):
        result = parseCAS20Response(cas20Success('<cas:attributes/>'))
        self.assertEqual(result.failure, ValidationResult.BAD_RESPONSE)

    def test_failure(self):
        result = parseCAS20Response(dedent('''\
            <cas:serviceResponse xmlns:cas="http://www.yale.edu/tp/cas">
                <cas:authenticationFailure code="INVALID_TICKET">
                    Ticket ST-1 not recognized
                </cas:authenticationFailure>
            </cas:serviceResponse>
            '''))
        self.assertEqual(result.failure, ValidationResult.REJECTED)
        self.assertEqual(result.errorCode, 'INVALID_TICKET')
        self.assertEqual(result.errorMessage, 'Ticket ST-1 not recognized')
        err = result.asError()
        self.assertIsInstance(err, AuthenticationFailure)
        self.assertEqual(err.code, 'INVALID_TICKET')

    def test_not_xml(self):
        result = parseCAS20Response('<html><body>Oops')
        self.assertEqual(result.failure, ValidationResult.BAD_RESPONSE)

    def test_wrong_root(self):
        result = parseCAS20Response('<html><body>Oops</body></html>')
        self.assertEqual(result.failure, ValidationResult.BAD_RESPONSE)

    def test_neither_success_nor_failure(self):
        result = parseCAS20Response(
            '<cas:serviceResponse xmlns:cas="http://www.yale.edu/tp/cas"/>')
        self.assertEqual(result.failure, ValidationResult.BAD_RESPONSE)

    def test_proxies_rejected_without_chains(self):
        raw = cas20Success(dedent('''\
            <cas:user>jsmith</cas:user>
            <cas:proxies>
                <cas:proxy>https://b.example.net/cb</cas:proxy>
                <cas:proxy>https://a.example.net/cb</cas:proxy>
            </cas:proxies>
            '''))
        result = parseCAS20Response(raw, AllowedProxyChains())
        self.assertEqual(result.failure, ValidationResult.PROXY_NOT_ALLOWED)
        self.assertEqual(result.proxies, [
            'https://b.example.net/cb', 'https://a.example.net/cb'])
        self.assertIsInstance(result.asError(), ProxyNotAllowed)

    def test_proxies_allowed_by_chain(self):
        raw = cas20Success(dedent('''\
            <cas:user>jsmith</cas:user>
            <cas:proxies>
                <cas:proxy>https://b.example.net/cb</cas:proxy>
            </cas:proxies>
            '''))
        chains = AllowedProxyChains()
        chains.allowProxyChain(ProxyChain(['https://b.example.net/']))
        result = parseCAS20Response(raw, chains)
        self.assertTrue(result.validated)
        self.assertEqual(result.proxies, ['https://b.example.net/cb'])


SAML_SUCCESS = dedent('''\
    <SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">
      <SOAP-ENV:Body>
        <Response xmlns="urn:oasis:names:tc:SAML:1.0:protocol"
                  xmlns:saml="urn:oasis:names:tc:SAML:1.0:assertion">
          <Status><StatusCode Value="samlp:Success"/></Status>
          <saml:Assertion>
            <saml:AuthenticationStatement>
              <saml:Subject>
                <saml:NameIdentifier> jsmith </saml:NameIdentifier>
              </saml:Subject>
            </saml:AuthenticationStatement>
            <saml:AttributeStatement>
              <saml:Attribute AttributeName="memberOf" AttributeNamespace="x">
                <saml:AttributeValue>staff</saml:AttributeValue>
                <saml:AttributeValue>faculty</saml:AttributeValue>
              </saml:Attribute>
              <saml:Attribute AttributeName="mail" AttributeNamespace="x">
                <saml:AttributeValue>jsmith@example.net</saml:AttributeValue>
              </saml:Attribute>
            </saml:AttributeStatement>
          </saml:Assertion>
        </Response>
      </SOAP-ENV:Body>
    </SOAP-ENV:Envelope>
    ''')


class SAML11ParseTest(TestCase):

    def test_success(self):
        result = parseSAML11Response(SAML_SUCCESS)
        self.assertTrue(result.validated)
        self.assertEqual(result.user, 'jsmith')
        self.assertEqual(result.attributes, {
            'memberOf': ['staff', 'faculty'],
            'mail': 'jsmith@example.net'})

    def test_wrong_root(self):
        result = parseSAML11Response('<foo/>')
        self.assertEqual(result.failure, ValidationResult.BAD_RESPONSE)

    def test_no_name_identifier(self):
        result = parseSAML11Response(
            '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/"/>')
        self.assertEqual(result.failure, ValidationResult.BAD_RESPONSE)

    def test_status_failure(self):
        result = parseSAML11Response(dedent('''\
            <SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">
              <SOAP-ENV:Body>
                <Response xmlns="urn:oasis:names:tc:SAML:1.0:protocol">
                  <Status>
                    <StatusCode Value="samlp:Responder"/>
                    <StatusMessage>Invalid ticket</StatusMessage>
                  </Status>
                </Response>
              </SOAP-ENV:Body>
            </SOAP-ENV:Envelope>
            '''))
        self.assertEqual(result.failure, ValidationResult.REJECTED)
        self.assertEqual(result.errorCode, 'Responder')
        self.assertEqual(result.errorMessage, 'Invalid ticket')


class ValidatorTest(TestCase):
    service = 'https://app.example.net/landing?x=1'

    def makeFactory(self, body=None, code=200):
        if body is None:
            responder = lambda request: None
        else:
            responder = lambda request: FakeResponse(code=code, body=body)
        return FakeHTTPRequestFactory(responder)

    @defer.inlineCallbacks
    def test_cas10_request(self):
        factory = self.makeFactory("yes\njsmith\n")
        validator = CAS10Validator('https://cas.example.net/cas/validate', factory)
        result = yield validator.validate('ST-1-abc', self.service)
        self.assertEqual(result.user, 'jsmith')
        self.assertEqual(len(factory.requests), 1)
        url = factory.requests[0].url
        parts = urlparse(url)
        self.assertEqual(parts.path, '/cas/validate')
        self.assertEqual(parse_qs(parts.query), {
            'service': [self.service],
            'ticket': ['ST-1-abc']})

    @defer.inlineCallbacks
    def test_cas20_request_with_renew_and_pgturl(self):
        factory = self.makeFactory(cas20Success('<cas:user>jsmith</cas:user>'))
        validator = CAS20Validator(
            'https://cas.example.net/cas/serviceValidate', factory,
            allowedProxyChains=AllowedProxyChains())
        result = yield validator.validate(
            'ST-1-abc', self.service, renew=True,
            pgtUrl='https://app.example.net/proxycb')
        self.assertTrue(result.validated)
        query = parse_qs(urlparse(factory.requests[0].url).query)
        self.assertEqual(query['renew'], ['true'])
        self.assertEqual(query['pgtUrl'], ['https://app.example.net/proxycb'])

    @defer.inlineCallbacks
    def test_no_server_response(self):
        factory = self.makeFactory()
        validator = CAS20Validator('https://cas.example.net/cas/serviceValidate', factory)
        result = yield validator.validate('ST-1-abc', self.service)
        self.assertEqual(result.failure, ValidationResult.NO_RESPONSE)
        self.assertIsInstance(result.asError(), NoServerResponse)

    @defer.inlineCallbacks
    def test_saml_request(self):
        factory = self.makeFactory(SAML_SUCCESS)
        validator = SAML11Validator('https://cas.example.net/cas/samlValidate', factory)
        result = yield validator.validate('ST-1-abc', self.service)
        self.assertEqual(result.user, 'jsmith')
        request = factory.requests[0]
        self.assertTrue(request.is_post)
        query = parse_qs(urlparse(request.url).query)
        self.assertEqual(query, {'TARGET': [self.service]})
        self.assertIn('soapaction: http://www.oasis-open.org/committees/security', request.headers)
        self.assertIn('content-type: text/xml', request.headers)
        doc = parseString(request.post_body)
        artifacts = doc.getElementsByTagName('samlp:AssertionArtifact')
        self.assertEqual(artifacts[0].firstChild.data, 'ST-1-abc')
