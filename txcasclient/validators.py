"""
Ticket validation for each version of the CAS protocol.

Each validator performs exactly one request to the CAS server and turns
the response into a L{ValidationResult}.  The parse functions are
usable on their own with the raw response text.
"""
# Standard library
import datetime
from urllib.parse import quote
import uuid
from xml.dom.minidom import parseString
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape as xml_escape

# Application modules
from txcasclient.constants import (
    ProtocolVersion, SAML_ASSERTION_NAMESPACE,
    SAML_REQUEST_TEMPLATE, SAML_SOAP_ACTION)
from txcasclient.exceptions import (
    AuthenticationFailure, BadServerResponse, CASConfigError,
    NoServerResponse, ProxyNotAllowed)

# External modules
from twisted.internet import defer
from twisted.python import log


#=======================================================================
# Results
#=======================================================================

class ValidationResult(object):
    """
    The outcome of validating one ticket.
    """
    NO_RESPONSE = 'no_response'
    BAD_RESPONSE = 'bad_response'
    REJECTED = 'rejected'
    PROXY_NOT_ALLOWED = 'proxy_not_allowed'

    def __init__(self, user='', attributes=None, pgtIou=None, proxies=None,
                 rawResponse='', failure=None, errorCode=None, errorMessage=None,
                 validateURL=None):
        self.user = user
        if attributes is None:
            attributes = {}
        self.attributes = attributes
        self.pgtIou = pgtIou
        if proxies is None:
            proxies = []
        self.proxies = proxies
        self.rawResponse = rawResponse
        self.failure = failure
        self.errorCode = errorCode
        self.errorMessage = errorMessage
        self.validateURL = validateURL

    @property
    def validated(self):
        return self.failure is None

    def asError(self):
        """
        The exception that describes a failed validation, or None.
        """
        failure = self.failure
        if failure is None:
            return None
        if failure == self.NO_RESPONSE:
            return NoServerResponse(
                "Could not reach the CAS server at '%s': %s" % (
                    self.validateURL, self.errorMessage or ''))
        if failure == self.BAD_RESPONSE:
            return BadServerResponse(
                self.errorMessage or "Invalid response from the CAS server.",
                response=self.rawResponse)
        if failure == self.PROXY_NOT_ALLOWED:
            return ProxyNotAllowed(self.proxies)
        return AuthenticationFailure(
            self.errorCode or '', self.errorMessage or '', response=self.rawResponse)

    def __repr__(self):
        if self.validated:
            return "<ValidationResult user=%r>" % self.user
        return "<ValidationResult failure=%s code=%r>" % (self.failure, self.errorCode)


def _bad(raw, msg):
    return ValidationResult(
        rawResponse=raw,
        failure=ValidationResult.BAD_RESPONSE,
        errorMessage=msg)

#=======================================================================
# DOM helpers
#=======================================================================

def get_elements(node, localName, namespaceURI='*'):
    return node.getElementsByTagNameNS(namespaceURI, localName)

def get_child_elements(node):
    return [c for c in node.childNodes if c.nodeType == c.ELEMENT_NODE]

def get_text(node):
    parts = []
    for child in node.childNodes:
        if child.nodeType in (child.TEXT_NODE, child.CDATA_SECTION_NODE):
            parts.append(child.data)
        elif child.nodeType == child.ELEMENT_NODE:
            parts.append(get_text(child))
    return ''.join(parts)

def _has_content(node):
    for child in node.childNodes:
        if child.nodeType == child.ELEMENT_NODE:
            return True
        if child.nodeType in (child.TEXT_NODE, child.CDATA_SECTION_NODE):
            if child.data.strip() != '':
                return True
    return False

def parse_root(raw):
    try:
        doc = parseString(raw)
    except (ExpatError, ValueError):
        return None
    return doc.documentElement

def add_attribute(attributes, name, value):
    """
    Add a value to an attribute mapping; repeated names become a list.
    """
    value = value.strip()
    if name in attributes:
        existing = attributes[name]
        if not isinstance(existing, list):
            attributes[name] = [existing]
        attributes[name].append(value)
    else:
        attributes[name] = value

#=======================================================================
# Parsers
#=======================================================================

def parseCAS10Response(raw):
    """
    Parse a CAS 1.0 `validate` response.
    """
    if raw.startswith('no\n'):
        return ValidationResult(
            rawResponse=raw,
            failure=ValidationResult.REJECTED,
            errorMessage='ST not validated')
    if not raw.startswith('yes\n'):
        return _bad(raw, 'Ill-formed CAS 1.0 response.')
    lines = raw.split('\n')
    return ValidationResult(user=lines[1].strip(), rawResponse=raw)

def readCAS20Attributes(success):
    """
    Read the attributes of an `authenticationSuccess` element.

    The nested (`attributes`), flat (RubyCAS) and Name-Value styles are
    tried in that order; the first one that yields attributes wins.
    """
    attributes = {}
    nested = get_elements(success, 'attributes')
    if len(nested) > 0:
        for child in get_child_elements(nested[0]):
            add_attribute(attributes, child.localName, get_text(child))
    else:
        for child in get_child_elements(success):
            if child.localName in ('user', 'proxies', 'proxyGrantingTicket'):
                continue
            value = get_text(child)
            if value.strip() != '':
                add_attribute(attributes, child.localName, value)
    if len(attributes) == 0:
        pairs = get_elements(success, 'attribute')
        if len(pairs) > 0:
            first = pairs[0]
            if (not _has_content(first)
                    and first.hasAttribute('name')
                    and first.hasAttribute('value')):
                for elm in pairs:
                    if elm.hasAttribute('name') and elm.hasAttribute('value'):
                        add_attribute(
                            attributes,
                            elm.getAttribute('name'),
                            elm.getAttribute('value'))
    return attributes

def parseCAS20Response(raw, allowedProxyChains=None):
    """
    Parse a CAS 2.0 or 3.0 `serviceValidate`/`proxyValidate` response.

    @param allowedProxyChains: An AllowedProxyChains that the proxies
        listed in the response must satisfy.  None accepts no proxies.
    """
    root = parse_root(raw)
    if root is None:
        return _bad(raw, 'Response is not well-formed XML.')
    if root.localName != 'serviceResponse':
        return _bad(raw, "Bad XML root node '%s'." % root.localName)
    successes = get_elements(root, 'authenticationSuccess')
    if len(successes) > 0:
        success = successes[0]
        users = get_elements(success, 'user')
        if len(users) == 0:
            return _bad(raw, 'No user in authenticationSuccess.')
        result = ValidationResult(
            user=get_text(users[0]).strip(),
            attributes=readCAS20Attributes(success),
            rawResponse=raw)
        pgt_ious = get_elements(success, 'proxyGrantingTicket')
        if len(pgt_ious) > 0:
            result.pgtIou = get_text(pgt_ious[0]).strip()
        result.proxies = [get_text(elm).strip() for elm in get_elements(success, 'proxy')]
        if len(result.proxies) > 0:
            allowed = False
            if allowedProxyChains is not None:
                allowed = allowedProxyChains.isProxyListAllowed(result.proxies)
            if not allowed:
                result.failure = ValidationResult.PROXY_NOT_ALLOWED
                result.errorMessage = 'Proxy not allowed'
        return result
    failures = get_elements(root, 'authenticationFailure')
    if len(failures) > 0:
        failure = failures[0]
        return ValidationResult(
            rawResponse=raw,
            failure=ValidationResult.REJECTED,
            errorCode=failure.getAttribute('code'),
            errorMessage=get_text(failure).strip())
    return _bad(raw, 'Neither authenticationSuccess nor authenticationFailure found.')

def readSAMLAttributes(root):
    values = {}
    for attr in get_elements(root, 'Attribute', SAML_ASSERTION_NAMESPACE):
        name = attr.getAttribute('AttributeName')
        values[name] = [
            get_text(elm) for elm in get_child_elements(attr)
            if elm.localName == 'AttributeValue'
                and elm.namespaceURI == SAML_ASSERTION_NAMESPACE]
    attributes = {}
    for name, value_list in values.items():
        if len(value_list) == 0:
            continue
        if len(value_list) > 1:
            attributes[name] = value_list
        else:
            attributes[name] = value_list[0]
    return attributes

def parseSAML11Response(raw):
    """
    Parse a SAML 1.1 `samlValidate` SOAP response.
    """
    root = parse_root(raw)
    if root is None:
        return _bad(raw, 'Response is not well-formed XML.')
    if root.localName != 'Envelope':
        return _bad(raw, "Bad XML root node '%s' (should be 'Envelope')." % root.localName)
    status_codes = get_elements(root, 'StatusCode')
    if len(status_codes) > 0:
        status = status_codes[0].getAttribute('Value')
        if status != '' and not status.endswith('Success'):
            messages = get_elements(root, 'StatusMessage')
            msg = ''
            if len(messages) > 0:
                msg = get_text(messages[0]).strip()
            return ValidationResult(
                rawResponse=raw,
                failure=ValidationResult.REJECTED,
                errorCode=status.split(':')[-1],
                errorMessage=msg)
    names = get_elements(root, 'NameIdentifier')
    if len(names) == 0:
        return _bad(raw, 'No NameIdentifier found in SAML payload.')
    return ValidationResult(
        user=get_text(names[0]).strip(),
        attributes=readSAMLAttributes(root),
        rawResponse=raw)

#=======================================================================
# Validators
#=======================================================================

def buildQueryUrl(url, query):
    if '?' in url:
        return url + '&' + query
    return url + '?' + query


class CAS10Validator(object):
    """
    Validates tickets with a CAS 1.0 `validate` request.
    """
    version = ProtocolVersion.CAS_1_0

    def __init__(self, validateURL, requestFactory, _debug=False):
        self.validateURL = validateURL
        self.requestFactory = requestFactory
        self._debug = _debug

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def buildValidateURL(self, ticket, service, renew=False, pgtUrl=None):
        url = buildQueryUrl(self.validateURL, 'service=' + quote(service, safe=''))
        url += '&ticket=' + quote(ticket, safe='')
        if pgtUrl is not None:
            url += '&pgtUrl=' + quote(pgtUrl, safe='')
        if renew:
            url += '&renew=true'
        return url

    def prepareRequest(self, request, ticket):
        pass

    def parseResponse(self, raw):
        return parseCAS10Response(raw)

    @defer.inlineCallbacks
    def validate(self, ticket, service, renew=False, pgtUrl=None):
        url = self.buildValidateURL(ticket, service, renew=renew, pgtUrl=pgtUrl)
        self.debug("[DEBUG][%s] validate_url: %s" % (self.__class__.__name__, url))
        request = self.requestFactory()
        request.setUrl(url)
        self.prepareRequest(request, ticket)
        sent = yield request.send()
        if not sent:
            return ValidationResult(
                failure=ValidationResult.NO_RESPONSE,
                errorMessage=request.getErrorMessage(),
                validateURL=url)
        result = self.parseResponse(request.getResponseBody())
        result.validateURL = url
        self.debug("[DEBUG][%s] result: %r" % (self.__class__.__name__, result))
        return result


class CAS20Validator(CAS10Validator):
    """
    Validates tickets with a CAS 2.0 `serviceValidate` or
    `proxyValidate` request.
    """
    version = ProtocolVersion.CAS_2_0

    def __init__(self, validateURL, requestFactory, allowedProxyChains=None, _debug=False):
        CAS10Validator.__init__(self, validateURL, requestFactory, _debug=_debug)
        self.allowedProxyChains = allowedProxyChains

    def parseResponse(self, raw):
        return parseCAS20Response(raw, self.allowedProxyChains)


class CAS30Validator(CAS20Validator):
    version = ProtocolVersion.CAS_3_0


class SAML11Validator(CAS10Validator):
    """
    Validates tickets with a SAML 1.1 `samlValidate` POST.
    """
    version = ProtocolVersion.SAML_1_1

    def buildValidateURL(self, ticket, service, renew=False, pgtUrl=None):
        url = buildQueryUrl(self.validateURL, 'TARGET=' + quote(service, safe=''))
        if renew:
            url += '&renew=true'
        return url

    def buildSAMLPayload(self, ticket):
        issue_instant = datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        return SAML_REQUEST_TEMPLATE % {
            'request_id': '_' + uuid.uuid4().hex,
            'issue_instant': issue_instant,
            'ticket': xml_escape(ticket),
        }

    def prepareRequest(self, request, ticket):
        request.addHeaders([
            'soapaction: %s' % SAML_SOAP_ACTION,
            'cache-control: no-cache',
            'pragma: no-cache',
            'accept: text/xml',
            'connection: keep-alive',
            'content-type: text/xml',
        ])
        request.makePost()
        request.setPostBody(self.buildSAMLPayload(ticket))

    def parseResponse(self, raw):
        return parseSAML11Response(raw)


def createValidator(version, client):
    """
    Create the validator for protocol `version`, configured from the
    CASClient `client`.
    """
    version = ProtocolVersion(version)
    debug = client._debug
    if version == ProtocolVersion.CAS_1_0:
        return CAS10Validator(
            client.getServerServiceValidateURL(),
            client.createRequest,
            _debug=debug)
    if version in (ProtocolVersion.CAS_2_0, ProtocolVersion.CAS_3_0):
        chains = client.getAllowedProxyChains()
        if chains.isProxyingAllowed():
            url = client.getServerProxyValidateURL()
        else:
            url = client.getServerServiceValidateURL()
        if version == ProtocolVersion.CAS_2_0:
            factory = CAS20Validator
        else:
            factory = CAS30Validator
        return factory(url, client.createRequest, allowedProxyChains=chains, _debug=debug)
    if version == ProtocolVersion.SAML_1_1:
        return SAML11Validator(
            client.getServerSamlValidateURL(),
            client.createRequest,
            _debug=debug)
    raise CASConfigError("Unsupported CAS protocol version '%s'." % version)
