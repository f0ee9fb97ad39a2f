
# External modules
from zope.interface import Interface, Attribute


class IPGTStorageFactory(Interface):

    tag = Attribute('String used to identify the plugin factory.')
    opt_help = Attribute('String description of the plugin.')
    opt_usage = Attribute('String describes how to provide arguments for factory.')

    def generatePGTStorage(argstring=""):
        """
        Create an object that implements IPGTStorage.
        """

class IPGTStorage(Interface):

    def init():
        """
        Prepare the storage backend.  Calling this more than once has
        no further effect.
        """

    def write(pgt, pgt_iou):
        """
        Store `pgt` under `pgt_iou`.
        Fails with DuplicatePGTIou if the IOU is already stored.
        """

    def read(pgt_iou):
        """
        Return a deferred that fires with the PGT stored under `pgt_iou`
        and removes it from the store.
        Fails with PGTNotFound if there is no such record.
        """

class IProxyChain(Interface):

    def matches(proxies):
        """
        Returns True if the ordered list of proxy URLs `proxies` is
        accepted by this chain.
        """

class ISessionStore(Interface):

    def get(session_id):
        """
        Return a deferred that fires with the Session for `session_id`
        or None.
        """

    def set(session_id, session):
        """
        Save `session` under `session_id`.
        """

    def destroy(session_id):
        """
        Remove the session for `session_id`, if any.
        """

    def rename(old_id, new_id):
        """
        Move the session stored under `old_id` to `new_id`, preserving
        its contents.
        """

class IHTTPRequest(Interface):

    def setUrl(url):
        """
        Set the URL to request.
        """

    def addHeader(header):
        """
        Add a 'Name: value' header line.
        """

    def addHeaders(headers):
        """
        Add a sequence of 'Name: value' header lines.
        """

    def addCookie(name, value):
        """
        Add a cookie.
        """

    def addCookies(cookies):
        """
        Add a mapping of cookies.
        """

    def makePost():
        """
        Send the request as a POST.
        """

    def setPostBody(body):
        """
        Set the POST body.
        """

    def setSslCaCert(ca_cert_path, validate_cn=True):
        """
        Only trust the CA certificate(s) in the PEM file `ca_cert_path`.
        """

    def setNoSslValidation():
        """
        Do not verify the server certificate.
        """

    def send():
        """
        Perform the request.
        Returns a deferred that fires True on success, False on a
        transport error (see getErrorMessage()).
        """

    def getResponseStatusCode():
        """
        Integer status code of the response.
        """

    def getResponseHeaders():
        """
        List of 'Name: value' response header lines.
        """

    def getResponseBody():
        """
        The decoded response body.
        """

    def getErrorMessage():
        """
        Description of the last transport error.
        """

class ICookieJar(Interface):

    def getCookies(url):
        """
        Return a dict of cookies to send to `url`.
        """

    def storeCookies(url, response_headers):
        """
        Store the cookies set by the response headers received from `url`.
        """

class IProxiedService(Interface):

    def getServiceUrl():
        """
        Return the URL of the service a proxy ticket is requested for.
        """

    def setProxyTicket(proxy_ticket):
        """
        Attach the proxy ticket used to access the service.
        """
