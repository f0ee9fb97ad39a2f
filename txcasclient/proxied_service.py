"""
Services accessed on behalf of the user with a proxy ticket.
"""
# Standard library
import imaplib
from urllib.parse import quote, urljoin, urlparse

# Application modules
from txcasclient.exceptions import (
    OutOfSequenceError, ProxiedServiceError, ProxyTicketError)
from txcasclient.interface import IProxiedService
from txcasclient.validators import buildQueryUrl

# External modules
from twisted.internet import defer, threads
from twisted.python import log
from zope.interface import implementer


class ProxiedService(object):
    """
    State shared by all proxied services: the target service URL and
    the proxy ticket used to access it.
    """

    def __init__(self, _debug=False):
        self.serviceUrl = None
        self.proxyTicket = None
        self._debug = _debug

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def getServiceUrl(self):
        if self.serviceUrl is None:
            raise ProxiedServiceError("No service URL has been set.")
        return self.serviceUrl

    def setProxyTicket(self, proxy_ticket):
        if not proxy_ticket:
            raise ProxyTicketError("Trying to initialize with an empty proxy ticket.")
        if self.proxyTicket is not None:
            raise OutOfSequenceError(
                "Already initialized, cannot change the proxy ticket.")
        self.proxyTicket = proxy_ticket

    def getProxyTicket(self):
        if self.proxyTicket is None:
            raise OutOfSequenceError("No proxy ticket yet. Call initializeProxiedService() first.")
        return self.proxyTicket


@implementer(IProxiedService)
class HttpGetService(ProxiedService):
    """
    Makes a GET request to a service, passing the proxy ticket as the
    `ticket` query argument and following up to 3 redirects.
    """
    maxRequests = 4

    def __init__(self, requestFactory, cookieJar, _debug=False):
        ProxiedService.__init__(self, _debug=_debug)
        self.requestFactory = requestFactory
        self.cookieJar = cookieJar
        self.sent = False
        self.responseStatusCode = None
        self.responseHeaders = []
        self.responseBody = None

    def setUrl(self, url):
        if self.sent:
            raise OutOfSequenceError("Request has already been sent, cannot change the URL.")
        self.serviceUrl = url

    def _checkSent(self):
        if not self.sent:
            raise OutOfSequenceError("Request has not been sent yet.")

    def getResponseStatusCode(self):
        self._checkSent()
        return self.responseStatusCode

    def getResponseHeaders(self):
        self._checkSent()
        return list(self.responseHeaders)

    def getResponseBody(self):
        self._checkSent()
        return self.responseBody

    def prepareRequest(self, request, first):
        pass

    @defer.inlineCallbacks
    def send(self):
        """
        Perform the request.

        @raise ProxiedServiceError: The service could not be reached or
            kept redirecting.
        """
        if self.sent:
            raise OutOfSequenceError("Request has already been sent.")
        url = buildQueryUrl(
            self.getServiceUrl(),
            'ticket=' + quote(self.getProxyTicket(), safe=''))
        self.sent = True
        for count in range(self.maxRequests):
            request = self.requestFactory()
            request.setUrl(url)
            request.addCookies(self.cookieJar.getCookies(url))
            self.prepareRequest(request, count == 0)
            self.debug("[DEBUG][%s] send(), url: %s" % (self.__class__.__name__, url))
            sent = yield request.send()
            if not sent:
                raise ProxiedServiceError(
                    "The proxied service `%s' could not be reached (%s)" % (
                        url, request.getErrorMessage()))
            headers = request.getResponseHeaders()
            self.cookieJar.storeCookies(url, headers)
            location = None
            for line in headers:
                name, sep, value = line.partition(':')
                if name.strip().lower() in ('location', 'uri'):
                    location = value.strip()
            if location is None:
                self.responseStatusCode = request.getResponseStatusCode()
                self.responseHeaders = headers
                self.responseBody = request.getResponseBody()
                return self.responseBody
            url = urljoin(url, location)
        raise ProxiedServiceError(
            "Exceeded the maximum number of redirects (%d) in proxied service request." % (
                self.maxRequests - 1))


class HttpPostService(HttpGetService):
    """
    Like L{HttpGetService}, but the first request is a POST with a body.
    """

    def __init__(self, requestFactory, cookieJar, _debug=False):
        HttpGetService.__init__(self, requestFactory, cookieJar, _debug=_debug)
        self.contentType = None
        self.body = None

    def setContentType(self, content_type):
        if self.sent:
            raise OutOfSequenceError("Request has already been sent.")
        self.contentType = content_type

    def setBody(self, body):
        if self.sent:
            raise OutOfSequenceError("Request has already been sent.")
        self.body = body

    def send(self):
        if self.contentType is None:
            return defer.fail(ProxiedServiceError(
                "You must specify a content type for POST requests."))
        if self.body is None:
            return defer.fail(ProxiedServiceError(
                "You must specify a body for POST requests."))
        return HttpGetService.send(self)

    def prepareRequest(self, request, first):
        if first:
            request.makePost()
            request.addHeader('Content-Type: %s' % self.contentType)
            request.setPostBody(self.body)


def openIMAPMailbox(mailbox, username, password, options=None):
    """
    Log in to the IMAP mailbox described by the URL `mailbox`
    (imap://host[:port]/folder or imaps://...) and select its folder.

    This blocks; run it in a thread.
    """
    if options is None:
        options = []
    parts = urlparse(mailbox)
    folder = parts.path.lstrip('/') or 'INBOX'
    if parts.scheme == 'imaps':
        conn = imaplib.IMAP4_SSL(parts.hostname, parts.port or 993)
    elif parts.scheme == 'imap':
        conn = imaplib.IMAP4(parts.hostname, parts.port or 143)
    else:
        raise ProxiedServiceError("Unsupported mailbox URL `%s'." % mailbox)
    try:
        conn.login(username, password)
        conn.select(folder, readonly=('readonly' in options))
    except imaplib.IMAP4.error as ex:
        conn.shutdown()
        raise ProxiedServiceError(
            "Cannot connect to mailbox `%s' (%s)" % (mailbox, ex))
    return conn


@implementer(IProxiedService)
class ImapService(ProxiedService):
    """
    Opens an IMAP mailbox, logging in as the user with the proxy ticket
    as the password.
    """

    def __init__(self, username, opener=None, _debug=False):
        ProxiedService.__init__(self, _debug=_debug)
        self.username = username
        self.mailbox = None
        self.options = []
        self.stream = None
        if opener is None:
            opener = self._threadedOpener
        self.opener = opener

    def _threadedOpener(self, mailbox, username, password, options):
        return threads.deferToThread(
            openIMAPMailbox, mailbox, username, password, options)

    def setServiceUrl(self, url):
        if self.stream is not None:
            raise OutOfSequenceError("Mailbox is already open.")
        self.serviceUrl = url

    def setMailbox(self, mailbox):
        if self.stream is not None:
            raise OutOfSequenceError("Mailbox is already open.")
        self.mailbox = mailbox

    def setOptions(self, options):
        if self.stream is not None:
            raise OutOfSequenceError("Mailbox is already open.")
        if options is None:
            options = []
        self.options = list(options)

    @defer.inlineCallbacks
    def open(self):
        if self.stream is not None:
            raise OutOfSequenceError("Mailbox is already open.")
        if self.mailbox is None:
            raise ProxiedServiceError("You must specify a mailbox to open.")
        pt = self.getProxyTicket()
        self.debug("[DEBUG][ImapService] open(), mailbox: %s" % self.mailbox)
        stream = yield defer.maybeDeferred(
            self.opener, self.mailbox, self.username, pt, self.options)
        self.stream = stream
        return stream

    def getStream(self):
        if self.stream is None:
            raise OutOfSequenceError("Mailbox has not been opened yet.")
        return self.stream
