"""
The process-wide CAS client configuration.
"""
# Standard library
import re
import socket
from urllib.parse import quote

# Application modules
from txcasclient.authenticator import Authenticator
from txcasclient.constants import (
    DEFAULT_SESSION_COOKIE, REBROADCAST_LOGOUT, ProtocolVersion)
from txcasclient.exceptions import CASConfigError
from txcasclient.file_pgt_storage import FilePGTStorage
from txcasclient.http import HTTPRequest
from txcasclient.interface import IPGTStorage, IPGTStorageFactory, ISessionStore
from txcasclient.proxy_chain import AllowedProxyChains
from txcasclient.session import InMemorySessionStore
from txcasclient.settings import get_bool, get_plugin_factory
from txcasclient.utils import log_cas_event
from txcasclient.validators import buildQueryUrl, createValidator

# External modules
from twisted.internet import defer, threads
from twisted.python import log

_rebroadcast_node = re.compile(r'^(http|https)://([^/:]+)(:\d+)?/?', re.I)
_ip_address = re.compile(r'^(\d+\.){3}\d+$|^[0-9A-Fa-f:]+:[0-9A-Fa-f:.]*$')


def lookupHostname(ip):
    """
    Reverse-resolve `ip` in a thread.  Fires with the host name.
    """
    d = threads.deferToThread(socket.gethostbyaddr, ip)
    d.addCallback(lambda result: result[0])
    return d


class CASClient(object):
    """
    The configuration shared by every request a protected application
    receives: the CAS server, the protocol version, proxy settings and
    the collaborators used to store sessions and PGTs.

    Use L{authenticator} to process an inbound request.
    """
    validationTimeout = 30
    rebroadcastConnectTimeout = 1
    rebroadcastTimeout = 4
    cacheTimesForAuthRecheck = 0
    sessionCookieName = DEFAULT_SESSION_COOKIE

    def __init__(self, version, serverHostname, serverPort, serverURI,
                 proxy=False, changeSessionID=True, sessionStore=None,
                 reactor=None, _debug=False):
        try:
            self.version = ProtocolVersion(version)
        except ValueError:
            raise CASConfigError("Unsupported CAS protocol version '%s'." % version)
        if not serverHostname:
            raise CASConfigError("The CAS server hostname must be set.")
        try:
            serverPort = int(serverPort)
        except (TypeError, ValueError):
            raise CASConfigError("Bad CAS server port '%s'." % serverPort)
        if serverPort <= 0:
            raise CASConfigError("Bad CAS server port '%s'." % serverPort)
        if serverURI is None:
            serverURI = ''
        if proxy and self.version in (ProtocolVersion.CAS_1_0, ProtocolVersion.SAML_1_1):
            raise CASConfigError(
                "CAS proxies are not supported with protocol version '%s'." % self.version.value)
        if reactor is None:
            from twisted.internet import reactor
        self.reactor = reactor
        self.serverHostname = serverHostname
        self.serverPort = serverPort
        self.serverURI = serverURI
        self.proxy = proxy
        self.changeSessionID = changeSessionID
        if sessionStore is None:
            sessionStore = InMemorySessionStore(reactor=reactor, _debug=_debug)
        if not ISessionStore.providedBy(sessionStore):
            raise CASConfigError("Session store must provide ISessionStore.")
        self.sessionStore = sessionStore
        self._debug = _debug
        self._urls = {}
        self.casServerCACert = None
        self.casServerValidateCN = True
        self.noCasServerValidation = False
        self.pgtStorage = None
        self._pgtStorageInitialized = False
        self.fixedCallbackURL = None
        self.allowedProxyChains = AllowedProxyChains(_debug=_debug)
        self.postAuthenticateCallback = None
        self.singleSignoutCallback = None
        self.rebroadcastNodes = []
        self.rebroadcastHeaders = []
        self.clearTicketsFromUrl = True
        self.requestFactory = self._createHTTPRequest
        self.reverseLookup = lookupHostname
        self.localHostname = socket.gethostname()

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    @classmethod
    def fromSettings(cls, scp, sessionStore=None, reactor=None):
        """
        Create a client from the `[CASClient]` and `[PLUGINS]` sections
        of the config parser `scp`.
        """
        section = 'CASClient'
        if not scp.has_section(section):
            raise CASConfigError("Missing settings section [%s]." % section)

        def opt(name, default=None):
            if scp.has_option(section, name):
                return scp.get(section, name)
            return default

        for required in ('server_hostname',):
            if opt(required) is None:
                raise CASConfigError("Missing setting '%s' in [%s]." % (required, section))
        _debug = get_bool(opt('debug', '0'))
        client = cls(
            opt('version', '2.0'),
            opt('server_hostname'),
            opt('server_port', '443'),
            opt('server_uri', '/cas'),
            proxy=get_bool(opt('proxy', '0')),
            changeSessionID=get_bool(opt('change_session_id', '1')),
            sessionStore=sessionStore,
            reactor=reactor,
            _debug=_debug)
        ca_cert = opt('ca_cert')
        if ca_cert:
            client.setCasServerCACert(ca_cert, validateCN=get_bool(opt('validate_cn', '1')))
        if get_bool(opt('no_server_validation', '0')):
            client.setNoCasServerValidation()
        callback_url = opt('callback_url')
        if callback_url:
            client.setFixedCallbackURL(callback_url)
        times = opt('cache_times_for_auth_recheck')
        if times:
            client.setCacheTimesForAuthRecheck(int(times))
        timeout = opt('validation_timeout')
        if timeout:
            client.validationTimeout = int(timeout)
        nodes = opt('rebroadcast_nodes', '')
        for node in nodes.split(','):
            node = node.strip()
            if node != '':
                client.addRebroadcastNode(node)
        if scp.has_option('PLUGINS', 'pgt_storage'):
            tag, sep, argstring = scp.get('PLUGINS', 'pgt_storage').partition(':')
            factory = get_plugin_factory(tag.strip(), IPGTStorageFactory)
            if factory is None:
                raise CASConfigError("No PGT storage plugin with tag '%s'." % tag)
            client.setPGTStorage(factory.generatePGTStorage(argstring))
        return client

    #-------------------------------------------------------------------
    # Server URLs
    #-------------------------------------------------------------------

    def getServerBaseURL(self):
        url = 'https://' + self.serverHostname
        if self.serverPort != 443:
            url += ':%d' % self.serverPort
        uri = self.serverURI
        if not uri.startswith('/'):
            uri = '/' + uri
        if '?' not in uri and not uri.endswith('/'):
            uri += '/'
        return url + uri

    def _getURL(self, name, default):
        url = self._urls.get(name)
        if url is None:
            url = self.getServerBaseURL() + default
        return url

    def _setURL(self, name, url):
        self._urls[name] = url

    def setServerLoginURL(self, url):
        self._setURL('login', url)

    def setServerServiceValidateURL(self, url):
        self._setURL('serviceValidate', url)

    def setServerProxyValidateURL(self, url):
        self._setURL('proxyValidate', url)

    def setServerSamlValidateURL(self, url):
        self._setURL('samlValidate', url)

    def setServerLogoutURL(self, url):
        self._setURL('logout', url)

    def setServerProxyURL(self, url):
        self._setURL('proxy', url)

    def getServerLoginURL(self, service, gateway=False, renew=False):
        url = buildQueryUrl(self._getURL('login', 'login'), 'service=' + quote(service, safe=''))
        if renew:
            url += '&renew=true'
        elif gateway:
            url += '&gateway=true'
        return url

    def getServerServiceValidateURL(self):
        paths = {
            ProtocolVersion.CAS_1_0: 'validate',
            ProtocolVersion.CAS_2_0: 'serviceValidate',
            ProtocolVersion.CAS_3_0: 'p3/serviceValidate',
        }
        return self._getURL('serviceValidate', paths.get(self.version, 'serviceValidate'))

    def getServerProxyValidateURL(self):
        paths = {
            ProtocolVersion.CAS_2_0: 'proxyValidate',
            ProtocolVersion.CAS_3_0: 'p3/proxyValidate',
        }
        path = paths.get(self.version)
        if path is None and 'proxyValidate' not in self._urls:
            return ''
        return self._getURL('proxyValidate', path)

    def getServerSamlValidateURL(self, service=None):
        url = self._getURL('samlValidate', 'samlValidate')
        if service is not None:
            url = buildQueryUrl(url, 'TARGET=' + quote(service, safe=''))
        return url

    def getServerProxyURL(self):
        if self.version == ProtocolVersion.CAS_1_0 and 'proxy' not in self._urls:
            return ''
        return self._getURL('proxy', 'proxy')

    def getServerLogoutURL(self):
        return self._getURL('logout', 'logout')

    #-------------------------------------------------------------------
    # TLS and outbound requests
    #-------------------------------------------------------------------

    def setCasServerCACert(self, path, validateCN=True):
        self.casServerCACert = path
        self.casServerValidateCN = validateCN

    def setNoCasServerValidation(self):
        self.noCasServerValidation = True

    def setRequestFactory(self, factory):
        """
        Use `factory(timeout=, connect_timeout=)` to create the
        IHTTPRequest objects for outbound calls.
        """
        self.requestFactory = factory

    def _createHTTPRequest(self, timeout=None, connect_timeout=None):
        return HTTPRequest(
            reactor=self.reactor,
            timeout=timeout,
            connect_timeout=connect_timeout,
            _debug=self._debug)

    def _applyTLSSettings(self, request):
        if self.casServerCACert is not None:
            request.setSslCaCert(self.casServerCACert, self.casServerValidateCN)
        elif self.noCasServerValidation:
            request.setNoSslValidation()

    def createRequest(self):
        """
        Create a request to the CAS server with the configured TLS trust.

        @raise CASConfigError: Neither a CA certificate nor disabled
            validation was configured.
        """
        if self.casServerCACert is None and not self.noCasServerValidation:
            raise CASConfigError(
                "You must call setCasServerCACert() or setNoCasServerValidation() "
                "before contacting the CAS server.")
        request = self.requestFactory(timeout=self.validationTimeout)
        self._applyTLSSettings(request)
        return request

    def createServiceRequest(self):
        """
        Create a request to a proxied service.
        """
        request = self.requestFactory(timeout=self.validationTimeout)
        self._applyTLSSettings(request)
        return request

    def setReverseLookup(self, func):
        self.reverseLookup = func

    #-------------------------------------------------------------------
    # Validation
    #-------------------------------------------------------------------

    def createValidator(self):
        return createValidator(self.version, self)

    def setCacheTimesForAuthRecheck(self, n):
        if not isinstance(n, int):
            raise TypeError("The number of auth rechecks must be an integer.")
        self.cacheTimesForAuthRecheck = n

    def setNoClearTicketsFromUrl(self):
        self.clearTicketsFromUrl = False

    def setPostAuthenticateCallback(self, func, *args):
        """
        Call `func(ticket, *args)` after each successful validation.
        """
        self.postAuthenticateCallback = (func, args)

    def setSingleSignoutCallback(self, func, *args):
        """
        Call `func(ticket, *args)` when the CAS server signs a user out.
        """
        self.singleSignoutCallback = (func, args)

    #-------------------------------------------------------------------
    # Proxy mode
    #-------------------------------------------------------------------

    def _checkProxyMode(self, method):
        if not self.proxy:
            raise CASConfigError("%s() only makes sense in proxy mode." % method)

    def setPGTStorage(self, storage):
        self._checkProxyMode('setPGTStorage')
        if not IPGTStorage.providedBy(storage):
            raise CASConfigError("PGT storage must provide IPGTStorage.")
        self.pgtStorage = storage
        self._pgtStorageInitialized = False

    @defer.inlineCallbacks
    def getPGTStorage(self):
        """
        Return a deferred that fires with the initialized PGT storage,
        creating a file storage in the temporary directory if none was
        set.
        """
        self._checkProxyMode('getPGTStorage')
        if self.pgtStorage is None:
            self.pgtStorage = FilePGTStorage(_debug=self._debug)
        if not self._pgtStorageInitialized:
            yield self.pgtStorage.init()
            self._pgtStorageInitialized = True
        return self.pgtStorage

    def setFixedCallbackURL(self, url):
        self._checkProxyMode('setFixedCallbackURL')
        self.fixedCallbackURL = url

    def getAllowedProxyChains(self):
        return self.allowedProxyChains

    def addAllowedProxyChain(self, chain):
        self.allowedProxyChains.allowProxyChain(chain)

    #-------------------------------------------------------------------
    # Rebroadcast
    #-------------------------------------------------------------------

    def addRebroadcastNode(self, url):
        if not _rebroadcast_node.match(url):
            raise ValueError("Rebroadcast node `%s' is not a valid URL." % url)
        self.rebroadcastNodes.append(url)

    def addRebroadcastHeader(self, header):
        self.rebroadcastHeaders.append(header)

    def isSelf(self, node, ownAddresses):
        """
        True if the rebroadcast `node` URL names this host.
        """
        host = _rebroadcast_node.match(node).group(2).lower()
        if _ip_address.match(host):
            candidates = [a for a in ownAddresses if _ip_address.match(a)]
        else:
            candidates = [a for a in ownAddresses if not _ip_address.match(a)]
            candidates.append(self.localHostname)
        for candidate in candidates:
            if candidate and candidate.lower() == host:
                return True
        return False

    def rebroadcast(self, kind, requestURI, ownAddresses=(), logoutRequest=None):
        """
        Forward a logout request or a PGT callback to the other nodes of
        the cluster.

        @return: A deferred that fires with the list of (success, sent)
            results once every node has answered or failed.
        """
        deferreds = []
        for node in self.rebroadcastNodes:
            if self.isSelf(node, ownAddresses):
                self.debug("[DEBUG][CASClient] Not rebroadcasting to self: %s" % node)
                continue
            url = node.rstrip('/') + requestURI
            request = self.requestFactory(
                timeout=self.rebroadcastTimeout,
                connect_timeout=self.rebroadcastConnectTimeout)
            self._applyTLSSettings(request)
            request.setUrl(url)
            request.addHeaders(self.rebroadcastHeaders)
            request.addHeader('Content-Type: application/x-www-form-urlencoded')
            request.makePost()
            if kind == REBROADCAST_LOGOUT:
                request.setPostBody(
                    'rebroadcast=false&logoutRequest=' + quote(logoutRequest or '', safe=''))
            else:
                request.setPostBody('rebroadcast=false')
            log_cas_event("Rebroadcast", [('type', kind), ('url', url)])
            d = defer.maybeDeferred(request.send)
            d.addErrback(self._logRebroadcastFailure, url)
            deferreds.append(d)
        return defer.DeferredList(deferreds, consumeErrors=True)

    def _logRebroadcastFailure(self, err, url):
        log.msg("[ERROR][CAS] Rebroadcast to '%s' failed." % url)
        log.err(err)
        return False

    #-------------------------------------------------------------------
    # Requests
    #-------------------------------------------------------------------

    def authenticator(self, request):
        """
        Create the Authenticator for the inbound `twisted.web` request.
        """
        return Authenticator(self, request)
