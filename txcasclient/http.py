# Application modules
from txcasclient.ca_trust import (
    createPinnedPolicyFromPEMs, NonVerifyingPolicyForHTTPS)
from txcasclient.exceptions import OutOfSequenceError
from txcasclient.interface import IHTTPRequest
# External modules
import treq
from treq.client import HTTPClient
from twisted.internet import defer
from twisted.python import log
from twisted.web.client import (
    Agent, BrowserLikePolicyForHTTPS)
from twisted.web.http_headers import Headers
from zope.interface import implementer


def normalizeDict_(d):
    if d is None:
        d = {}
    else:
        d = dict(d)
    return d

def createNonVerifyingHTTPClient(reactor, agent_kwds=None, **kwds):
    agent_kwds = normalizeDict_(agent_kwds)
    agent_kwds['contextFactory'] = NonVerifyingPolicyForHTTPS()
    return HTTPClient(Agent(reactor, **agent_kwds), **kwds)

def createVerifyingHTTPClient(reactor, agent_kwds=None, **kwds):
    agent_kwds = normalizeDict_(agent_kwds)
    agent_kwds['contextFactory'] = BrowserLikePolicyForHTTPS()
    return HTTPClient(Agent(reactor, **agent_kwds), **kwds)

def createPinnedHTTPClient(reactor, ca_cert_path, validate_cn=True, agent_kwds=None, **kwds):
    agent_kwds = normalizeDict_(agent_kwds)
    agent_kwds['contextFactory'] = createPinnedPolicyFromPEMs(
        ca_cert_path, validate_cn=validate_cn)
    return HTTPClient(Agent(reactor, **agent_kwds), **kwds)


@implementer(IHTTPRequest)
class HTTPRequest(object):
    """
    A single outbound HTTP(S) request.

    The request is configured with the setters, then performed once
    with L{send}.  Afterwards the response status, headers and body are
    available through the getters.
    """
    timeout = None
    connect_timeout = None

    def __init__(self, reactor=None, timeout=None, connect_timeout=None, _debug=False):
        if reactor is None:
            from twisted.internet import reactor
        self.reactor = reactor
        if timeout is not None:
            self.timeout = timeout
        if connect_timeout is not None:
            self.connect_timeout = connect_timeout
        self._debug = _debug
        self.url = None
        self.headers = []
        self.cookies = {}
        self.is_post = False
        self.post_body = None
        self.ca_cert_path = None
        self.validate_cn = True
        self.verify = True
        self.sent = False
        self._response_code = None
        self._response_headers = []
        self._response_body = None
        self._error_message = ''

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def _checkNotSent(self):
        if self.sent:
            raise OutOfSequenceError("Request has already been sent.")

    def _checkSent(self):
        if not self.sent:
            raise OutOfSequenceError("Request has not been sent yet.")

    def setUrl(self, url):
        self._checkNotSent()
        self.url = url

    def getUrl(self):
        return self.url

    def addHeader(self, header):
        self._checkNotSent()
        self.headers.append(header)

    def addHeaders(self, headers):
        self._checkNotSent()
        self.headers.extend(headers)

    def addCookie(self, name, value):
        self._checkNotSent()
        self.cookies[name] = value

    def addCookies(self, cookies):
        self._checkNotSent()
        self.cookies.update(cookies)

    def makePost(self):
        self._checkNotSent()
        self.is_post = True

    def setPostBody(self, body):
        self._checkNotSent()
        if not self.is_post:
            raise OutOfSequenceError(
                "Cannot add a POST body to a GET request, use makePost() first.")
        self.post_body = body

    def setSslCaCert(self, ca_cert_path, validate_cn=True):
        self._checkNotSent()
        self.ca_cert_path = ca_cert_path
        self.validate_cn = validate_cn

    def setNoSslValidation(self):
        self._checkNotSent()
        self.verify = False

    def _createHTTPClient(self):
        agent_kwds = {}
        if self.connect_timeout is not None:
            agent_kwds['connectTimeout'] = self.connect_timeout
        if not self.verify:
            return createNonVerifyingHTTPClient(self.reactor, agent_kwds)
        if self.ca_cert_path is not None:
            return createPinnedHTTPClient(
                self.reactor,
                self.ca_cert_path,
                validate_cn=self.validate_cn,
                agent_kwds=agent_kwds)
        return createVerifyingHTTPClient(self.reactor, agent_kwds)

    def _buildHeaders(self):
        headers = Headers()
        for line in self.headers:
            name, sep, value = line.partition(':')
            if sep == '':
                continue
            headers.addRawHeader(name.strip(), value.strip())
        return headers

    @defer.inlineCallbacks
    def send(self):
        """
        Perform the request.

        @return: A deferred that fires True when a response was received
            or False on a transport error.
        """
        self._checkNotSent()
        self.sent = True
        if self.is_post:
            method = 'POST'
        else:
            method = 'GET'
        kwds = {
            'headers': self._buildHeaders(),
            'allow_redirects': False,
            'reactor': self.reactor,
        }
        if len(self.cookies) > 0:
            kwds['cookies'] = self.cookies
        if self.is_post and self.post_body is not None:
            body = self.post_body
            if not isinstance(body, bytes):
                body = body.encode('utf-8')
            kwds['data'] = body
        if self.timeout is not None:
            kwds['timeout'] = self.timeout
        self.debug('[DEBUG][HTTP] request_method="%s" url="%s"' % (method, self.url))
        http_client = self._createHTTPClient()
        try:
            response = yield http_client.request(method, self.url, **kwds)
            body = yield treq.content(response)
        except Exception as ex:
            self._error_message = "%s: %s" % (ex.__class__.__name__, str(ex))
            log.msg('''[ERROR][HTTP] url="%s" error="%s"''' % (self.url, self._error_message))
            return False
        self._response_code = response.code
        lines = []
        for name, values in response.headers.getAllRawHeaders():
            name = name.decode('latin-1')
            for value in values:
                lines.append("%s: %s" % (name, value.decode('latin-1')))
        self._response_headers = lines
        self._response_body = body.decode('utf-8', 'replace')
        self.debug('[DEBUG][HTTP] url="%s" status="%s"' % (self.url, self._response_code))
        return True

    def getResponseStatusCode(self):
        self._checkSent()
        return self._response_code

    def getResponseHeaders(self):
        self._checkSent()
        return list(self._response_headers)

    def getResponseBody(self):
        self._checkSent()
        return self._response_body

    def getErrorMessage(self):
        return self._error_message
