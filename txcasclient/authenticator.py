"""
Per-request CAS processing.

An L{Authenticator} is created by L{txcasclient.client.CASClient} for
each inbound `twisted.web` request.  Its operations return deferreds
that fire with an L{Outcome} telling the application whether to serve
the request, redirect or send the response produced here.
"""
# Standard library
import re
import uuid
from urllib.parse import quote

# Application modules
from txcasclient.constants import (
    PGT_IOU_PATTERN, PGT_PATTERN, REBROADCAST_LOGOUT, REBROADCAST_PGTIOU,
    SERVICE_NOT_AVAILABLE, SERVICE_OK,
    SERVICE_TICKET_PATTERN, SESSION_INDEX_PATTERN, ProxiedServiceType)
from txcasclient.cookies import SessionCookieJar
from txcasclient.exceptions import (
    AuthenticationFailure, BadRequestError, CASConfigError,
    InvalidTicketSpec, NotHTTPSError, OutOfSequenceError,
    PGTStorageError, ProxiedServiceError, ProxyTicketError)
from txcasclient.outcome import Outcome
from txcasclient.proxied_service import HttpGetService, HttpPostService, ImapService
from txcasclient.proxy import retrievePT
from txcasclient.proxy_chain import RegexPattern, parse_pattern
from txcasclient.session import Session
from txcasclient.utils import get_header, get_single_param_or_default, log_cas_event
from txcasclient.validators import buildQueryUrl

# External modules
from twisted.internet import defer
from twisted.python import log

_ticket_query_arg = re.compile(r'&ticket(=[^&]*)?(?=&|$)|^ticket(=[^&]*)?(&|$)')
_session_id_chars = re.compile(r'[^a-zA-Z0-9\-]')


def sessionIDFromTicket(ticket):
    """
    The session identifier a session is renamed to after `ticket` was
    validated.  Single logout requests name the same ticket.
    """
    return _session_id_chars.sub('', ticket)

def removeTicketFromQuery(query):
    return _ticket_query_arg.sub('', query)


class Authenticator(object):
    """
    Handles CAS authentication for one inbound request.
    """

    def __init__(self, client, request):
        self.client = client
        self.request = request
        self.sessionStore = client.sessionStore
        self.session = None
        self.sessionID = None
        self._url = None
        self._authCaller = None
        self._authResult = False
        self.serviceErrorCode = SERVICE_OK
        self._debug = client._debug

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    #-------------------------------------------------------------------
    # Request inspection
    #-------------------------------------------------------------------

    def getArg(self, name, default=None):
        return get_single_param_or_default(self.request, name, default)

    def getTicket(self):
        """
        The service or proxy ticket in the query string, or None.

        @raise InvalidTicketSpec: The ticket is not of the form ST-... or
            PT-...
        """
        ticket = self.getArg('ticket')
        if ticket is None or ticket == '':
            return None
        if not SERVICE_TICKET_PATTERN.match(ticket):
            raise InvalidTicketSpec("Ill-formed ticket found in the URL (ticket=`%s')" % ticket)
        return ticket

    def _getScheme(self):
        proto = get_header(self.request, 'x-forwarded-proto')
        if proto:
            return proto.split(',')[0].strip().lower()
        if self.request.isSecure():
            return 'https'
        return 'http'

    def _getServerHost(self, scheme):
        request = self.request
        host = None
        forwarded_host = get_header(request, 'x-forwarded-host')
        if forwarded_host:
            host = forwarded_host.split(',')[0].strip()
        if not host:
            host = get_header(request, 'x-forwarded-server')
        if not host:
            host = get_header(request, 'host')
        if not host:
            host = self._getListeningHost()
        if ':' in host and not host.endswith(']'):
            return host
        port = get_header(request, 'x-forwarded-port')
        if port:
            port = int(port.strip())
        else:
            port = request.getHost().port
        if (scheme, port) not in (('http', 80), ('https', 443)):
            host = '%s:%d' % (host, port)
        return host

    def _getRequestPath(self):
        uri = self.request.uri
        if isinstance(uri, bytes):
            uri = uri.decode('utf-8')
        path, sep, query = uri.partition('?')
        return path, query

    def getURL(self):
        """
        The URL of the current request without its `ticket` argument.
        This is the service URL sent to the CAS server.
        """
        if self._url is None:
            scheme = self._getScheme()
            path, query = self._getRequestPath()
            url = '%s://%s%s' % (scheme, self._getServerHost(scheme), path)
            query = removeTicketFromQuery(query)
            if query != '':
                url = url + '?' + query
            self._url = url
        return self._url

    def setURL(self, url):
        self._url = url

    def getCallbackURL(self):
        if self.client.fixedCallbackURL is not None:
            return self.client.fixedCallbackURL
        path, query = self._getRequestPath()
        return 'https://%s%s' % (self._getServerHost('https'), path)

    def _getListeningHost(self):
        host = self.request.getHost().host
        if isinstance(host, bytes):
            host = host.decode('utf-8')
        return host

    def _ownAddresses(self):
        return [self._getListeningHost()]

    #-------------------------------------------------------------------
    # Session
    #-------------------------------------------------------------------

    def _setSessionCookie(self, session_id):
        self.request.addCookie(
            self.client.sessionCookieName,
            session_id,
            path='/',
            secure=self.request.isSecure(),
            httpOnly=True)

    @defer.inlineCallbacks
    def loadSession(self):
        if self.session is not None:
            return self.session
        name = self.client.sessionCookieName.encode('utf-8')
        session_id = self.request.getCookie(name)
        session = None
        if session_id is not None:
            session_id = session_id.decode('utf-8')
            session = yield self.sessionStore.get(session_id)
        else:
            session_id = uuid.uuid4().hex
            self._setSessionCookie(session_id)
        if session is None:
            session = Session()
        if self.client.proxy and (session.user == '') != (session.pgt == ''):
            log.msg(
                "[ERROR][CAS] Session '%s' has a user and PGT mismatch; "
                "discarding the CAS identity." % session_id)
            session.clearIdentity()
        self.sessionID = session_id
        self.session = session
        return session

    def saveSession(self):
        return self.sessionStore.set(self.sessionID, self.session)

    @defer.inlineCallbacks
    def _renameSession(self, ticket):
        if not self.client.changeSessionID:
            return None
        new_id = sessionIDFromTicket(ticket)
        old_id = self.sessionID
        yield self.sessionStore.rename(old_id, new_id)
        self.sessionID = new_id
        self._setSessionCookie(new_id)
        log_cas_event("Session renamed", [('old', old_id), ('new', new_id)])
        return None

    def wasPreviouslyAuthenticated(self):
        session = self.session
        if self.client.proxy:
            return session.user != '' and session.pgt != ''
        return session.user != ''

    #-------------------------------------------------------------------
    # Authentication
    #-------------------------------------------------------------------

    def _markAuthenticationCall(self, caller, result):
        self._authCaller = caller
        self._authResult = result

    def wasAuthenticationCalled(self):
        return self._authCaller is not None

    def wasAuthenticationCallSuccessful(self):
        self._ensureAuthenticationCalled()
        return self._authResult

    def getAuthenticationCaller(self):
        self._ensureAuthenticationCalled()
        return self._authCaller

    def _ensureAuthenticationCalled(self):
        if not self.wasAuthenticationCalled():
            raise OutOfSequenceError(
                "This method cannot be called before forceAuthentication(), "
                "checkAuthentication() or isAuthenticated().")

    def _ensureAuthenticationCallSuccessful(self):
        self._ensureAuthenticationCalled()
        if not self._authResult:
            raise OutOfSequenceError(
                "Authentication was checked (by %s()) but the method returned false." % (
                    self._authCaller))

    @defer.inlineCallbacks
    def _begin(self):
        """
        Load the session and handle PGT callbacks.

        @return: An Outcome that ends the request, or None.
        """
        yield self.loadSession()
        if self.isCallbackMode():
            outcome = yield self.handleCallback()
            return outcome
        return None

    @defer.inlineCallbacks
    def isAuthenticated(self, renew=False):
        """
        Check whether the user is authenticated, validating the ticket
        in the URL if there is one.
        """
        outcome = yield self._begin()
        if outcome is not None:
            return outcome
        outcome = yield self._isAuthenticated(renew)
        if outcome.isContinue:
            self._markAuthenticationCall('isAuthenticated', outcome.authenticated)
        return outcome

    @defer.inlineCallbacks
    def _isAuthenticated(self, renew):
        try:
            ticket = self.getTicket()
        except (InvalidTicketSpec, BadRequestError) as ex:
            log.msg("[ERROR][CAS] %s" % ex)
            return Outcome.failure(ex, code=400)
        if self.wasPreviouslyAuthenticated() and not (renew and ticket is not None):
            if ticket is not None:
                if self.client.clearTicketsFromUrl:
                    self.debug("[DEBUG][Authenticator] Already authenticated, dropping ticket.")
                    yield self.saveSession()
                    return Outcome.redirect(self.getURL())
                self.debug("[DEBUG][Authenticator] Already authenticated, skipping ticket clearing.")
            yield self.saveSession()
            return Outcome.proceed(True)
        if ticket is None:
            yield self.saveSession()
            return Outcome.proceed(False)
        outcome = yield self._validateTicket(ticket, renew)
        return outcome

    @defer.inlineCallbacks
    def _validateTicket(self, ticket, renew):
        client = self.client
        service = self.getURL()
        pgt_url = None
        if client.proxy:
            pgt_url = self.getCallbackURL()
        validator = client.createValidator()
        result = yield validator.validate(ticket, service, renew=renew, pgtUrl=pgt_url)
        if not result.validated:
            error = result.asError()
            log_cas_event("Ticket not validated", [
                ('ticket', ticket),
                ('service', service),
                ('reason', str(error))])
            return Outcome.failure(error)
        pgt = ''
        if client.proxy:
            try:
                pgt = yield self._validatePGT(result)
            except AuthenticationFailure as ex:
                log_cas_event("PGT not loaded", [('ticket', ticket), ('reason', str(ex))])
                return Outcome.failure(ex)
        session = self.session
        session.user = result.user
        session.attributes = result.attributes
        session.proxies = result.proxies
        session.pgt = pgt
        log_cas_event("Ticket validated", [
            ('ticket', ticket),
            ('service', service),
            ('user', result.user)])
        yield self._renameSession(ticket)
        if client.postAuthenticateCallback is not None:
            func, args = client.postAuthenticateCallback
            yield defer.maybeDeferred(func, ticket, *args)
        yield self.saveSession()
        if not client.clearTicketsFromUrl:
            return Outcome.proceed(True)
        return Outcome.redirect(self.getURL())

    @defer.inlineCallbacks
    def _validatePGT(self, result):
        pgt_iou = result.pgtIou
        if not pgt_iou:
            raise AuthenticationFailure(
                '', 'Ticket validated but no PGT Iou transmitted',
                response=result.rawResponse)
        if not PGT_IOU_PATTERN.fullmatch(pgt_iou):
            raise AuthenticationFailure(
                '', 'PGT Iou was transmitted but has wrong format',
                response=result.rawResponse)
        storage = yield self.client.getPGTStorage()
        try:
            pgt = yield storage.read(pgt_iou)
        except PGTStorageError as ex:
            self.debug("[DEBUG][Authenticator] PGT read failed: %s" % ex)
            pgt = None
        if not pgt:
            raise AuthenticationFailure(
                '', 'PGT Iou was transmitted but PGT could not be retrieved',
                response=result.rawResponse)
        return pgt

    @defer.inlineCallbacks
    def forceAuthentication(self):
        """
        Require authentication, redirecting to the CAS login page when
        the user is not authenticated.
        """
        outcome = yield self.isAuthenticated()
        if not outcome.isContinue:
            return outcome
        self._markAuthenticationCall('forceAuthentication', outcome.authenticated)
        if outcome.authenticated:
            return outcome
        outcome = yield self.redirectToCas()
        return outcome

    @defer.inlineCallbacks
    def checkAuthentication(self):
        """
        Check authentication with a gateway request to the CAS server.
        A negative answer is cached for the number of requests set with
        CASClient.setCacheTimesForAuthRecheck().
        """
        outcome = yield self.isAuthenticated()
        if not outcome.isContinue:
            return outcome
        session = self.session
        if outcome.authenticated:
            session.authChecked = False
            result = True
        elif session.authChecked:
            session.authChecked = False
            result = False
        else:
            n = self.client.cacheTimesForAuthRecheck
            count = session.unauthCount
            if (count != Session.UNAUTH_COUNT_UNSET and n == -1) or (0 <= count < n):
                if n != -1:
                    session.unauthCount = count + 1
                result = False
            else:
                session.unauthCount = 0
                session.authChecked = True
                self.debug("[DEBUG][Authenticator] Checking authentication with a gateway redirect.")
                outcome = yield self.redirectToCas(gateway=True)
                return outcome
        yield self.saveSession()
        self._markAuthenticationCall('checkAuthentication', result)
        return Outcome.proceed(result)

    @defer.inlineCallbacks
    def renewAuthentication(self):
        """
        Require the user to authenticate again with their primary
        credentials.
        """
        yield self.loadSession()
        self.session.authChecked = False
        outcome = yield self.isAuthenticated(renew=True)
        if not outcome.isContinue:
            return outcome
        self._markAuthenticationCall('renewAuthentication', outcome.authenticated)
        if outcome.authenticated:
            return outcome
        outcome = yield self.redirectToCas(renew=True)
        return outcome

    @defer.inlineCallbacks
    def redirectToCas(self, gateway=False, renew=False):
        """
        Redirect to the CAS login page.
        """
        yield self.loadSession()
        url = self.client.getServerLoginURL(self.getURL(), gateway=gateway, renew=renew)
        log_cas_event("Redirected to CAS", [
            ('service', self.getURL()),
            ('gateway', gateway),
            ('renew', renew)])
        yield self.saveSession()
        return Outcome.redirect(url)

    @defer.inlineCallbacks
    def logout(self, url=None, service=None):
        """
        Destroy the local session and redirect to the CAS logout page.
        """
        yield self.loadSession()
        logout_url = self.client.getServerLogoutURL()
        if service is not None:
            logout_url = buildQueryUrl(logout_url, 'service=' + quote(service, safe=''))
        if url is not None:
            logout_url = buildQueryUrl(logout_url, 'url=' + quote(url, safe=''))
        yield self.sessionStore.destroy(self.sessionID)
        log_cas_event("Logout", [('session', self.sessionID), ('user', self.session.user)])
        self.session = Session()
        return Outcome.redirect(logout_url)

    #-------------------------------------------------------------------
    # PGT callback
    #-------------------------------------------------------------------

    def isCallbackMode(self):
        if not self.client.proxy:
            return False
        try:
            pgt_iou = self.getArg('pgtIou')
            pgt = self.getArg('pgtId')
        except BadRequestError:
            return False
        return bool(pgt_iou) and bool(pgt)

    def _isRebroadcast(self):
        return b'rebroadcast' in self.request.args

    @defer.inlineCallbacks
    def handleCallback(self):
        """
        Store the PGT the CAS server delivers to the callback URL.
        """
        if self._getScheme() != 'https':
            ex = NotHTTPSError("CAS proxy callbacks must be accessed via HTTPS.")
            log.msg("[ERROR][CAS] %s" % ex)
            return Outcome.failure(ex, code=403)
        pgt_iou = self.getArg('pgtIou')
        pgt = self.getArg('pgtId')
        if not PGT_IOU_PATTERN.fullmatch(pgt_iou) or not PGT_PATTERN.fullmatch(pgt):
            log.msg("[ERROR][CAS] PGT format invalid: pgtIou=`%s'" % pgt_iou)
            return Outcome.terminate(400, '')
        if len(self.client.rebroadcastNodes) > 0 and not self._isRebroadcast():
            yield self.client.rebroadcast(
                REBROADCAST_PGTIOU,
                self.request.uri.decode('utf-8'),
                ownAddresses=self._ownAddresses())
        storage = yield self.client.getPGTStorage()
        try:
            yield storage.write(pgt, pgt_iou)
        except PGTStorageError as ex:
            log.msg("[ERROR][CAS] Could not store PGT for IOU `%s': %s" % (pgt_iou, ex))
            return Outcome.failure(ex, code=500, title="PGT storage failed")
        log_cas_event("PGT stored", [('pgt_iou', pgt_iou)])
        return Outcome.terminate(200, '')

    #-------------------------------------------------------------------
    # Single logout
    #-------------------------------------------------------------------

    def isLogoutRequest(self):
        if self.request.method != b'POST':
            return False
        try:
            return bool(self.getArg('logoutRequest'))
        except BadRequestError:
            return False

    @defer.inlineCallbacks
    def _isAllowedClient(self, allowedClients):
        client_ip = self.request.getClientAddress().host
        try:
            client_name = yield self.client.reverseLookup(client_ip)
        except OSError as ex:
            self.debug("[DEBUG][Authenticator] Reverse lookup of '%s' failed: %s" % (client_ip, ex))
            client_name = None
        for allowed in allowedClients:
            pattern = parse_pattern(allowed)
            if isinstance(pattern, RegexPattern):
                if pattern.matches(client_ip):
                    return True
                if client_name is not None and pattern.matches(client_name):
                    return True
            elif allowed == client_ip or allowed == client_name:
                return True
        return False

    @defer.inlineCallbacks
    def handleLogoutRequests(self, checkClient=True, allowedClients=None):
        """
        Handle a single logout request from the CAS server.

        @param allowedClients: Host names, IP addresses or /regex/
            patterns of the hosts allowed to send logout requests.
            Defaults to the CAS server host name.
        @return: A continue outcome if the request is not a logout
            request, otherwise a terminating outcome.
        """
        if not self.isLogoutRequest():
            return Outcome.proceed(False)
        client_ip = self.request.getClientAddress().host
        log_cas_event("Single logout request", [('client', client_ip)])
        if checkClient:
            if allowedClients is None:
                allowedClients = [self.client.serverHostname]
            allowed = yield self._isAllowedClient(allowedClients)
            if not allowed:
                log.msg("[ERROR][CAS] Unauthorized logout request from client '%s'" % client_ip)
                return Outcome.terminate(403, 'Unauthorized!')
        logout_request = self.getArg('logoutRequest')
        m = SESSION_INDEX_PATTERN.search(logout_request)
        ticket = None
        if m is not None:
            ticket = m.group(1).strip()
        if len(self.client.rebroadcastNodes) > 0 and not self._isRebroadcast():
            yield self.client.rebroadcast(
                REBROADCAST_LOGOUT,
                self.request.uri.decode('utf-8'),
                ownAddresses=self._ownAddresses(),
                logoutRequest=logout_request)
        if not ticket:
            log.msg("[ERROR][CAS] Logout request without a SessionIndex.")
            return Outcome.terminate(200, '')
        if self.client.singleSignoutCallback is not None:
            func, args = self.client.singleSignoutCallback
            yield defer.maybeDeferred(func, ticket, *args)
        if self.client.changeSessionID:
            session_id = sessionIDFromTicket(ticket)
            yield self.sessionStore.destroy(session_id)
            log_cas_event("Session destroyed", [('ticket', ticket), ('session', session_id)])
        return Outcome.terminate(200, '')

    #-------------------------------------------------------------------
    # Identity
    #-------------------------------------------------------------------

    def getUser(self):
        self._ensureAuthenticationCallSuccessful()
        return self.session.user

    def getAttributes(self):
        self._ensureAuthenticationCallSuccessful()
        return dict(self.session.attributes)

    def hasAttributes(self):
        self._ensureAuthenticationCallSuccessful()
        return len(self.session.attributes) > 0

    def hasAttribute(self, key):
        self._ensureAuthenticationCallSuccessful()
        return key in self.session.attributes

    def getAttribute(self, key):
        self._ensureAuthenticationCallSuccessful()
        return self.session.attributes.get(key)

    def getProxies(self):
        self._ensureAuthenticationCallSuccessful()
        return list(self.session.proxies)

    #-------------------------------------------------------------------
    # Proxied services
    #-------------------------------------------------------------------

    def _checkProxyMode(self):
        if not self.client.proxy:
            raise CASConfigError("This method only makes sense in proxy mode.")

    def retrievePT(self, targetService):
        """
        Retrieve a proxy ticket for `targetService` with the session PGT.
        """
        self._checkProxyMode()
        self._ensureAuthenticationCallSuccessful()
        return retrievePT(self.client, targetService, self.session.pgt)

    def getCookieJar(self):
        return SessionCookieJar(self.session.serviceCookies, _debug=self._debug)

    def getProxiedService(self, kind):
        """
        Create a proxied service of ProxiedServiceType `kind`.
        """
        self._checkProxyMode()
        self._ensureAuthenticationCallSuccessful()
        kind = ProxiedServiceType(kind)
        if kind == ProxiedServiceType.HTTP_GET:
            return HttpGetService(
                self.client.createServiceRequest, self.getCookieJar(), _debug=self._debug)
        if kind == ProxiedServiceType.HTTP_POST:
            return HttpPostService(
                self.client.createServiceRequest, self.getCookieJar(), _debug=self._debug)
        return ImapService(self.session.user, _debug=self._debug)

    @defer.inlineCallbacks
    def initializeProxiedService(self, service):
        """
        Fetch a proxy ticket for the service URL and attach it.
        """
        url = service.getServiceUrl()
        pt = yield self.retrievePT(url)
        service.setProxyTicket(pt)
        return service

    @defer.inlineCallbacks
    def serviceWeb(self, url):
        """
        GET `url` as a proxied service.

        @return: A deferred that fires with (True, body) on success or
            (False, error message) on failure; the failure kind is left
            in `serviceErrorCode`.
        """
        try:
            service = self.getProxiedService(ProxiedServiceType.HTTP_GET)
            service.setUrl(url)
            yield self.initializeProxiedService(service)
            body = yield service.send()
        except ProxyTicketError as ex:
            self.serviceErrorCode = ex.code
            return (False, str(ex))
        except ProxiedServiceError as ex:
            self.serviceErrorCode = SERVICE_NOT_AVAILABLE
            return (False, "The service `%s' is not available (%s)" % (url, ex))
        yield self.saveSession()
        self.serviceErrorCode = SERVICE_OK
        return (True, body)

    @defer.inlineCallbacks
    def serviceMail(self, url, serviceUrl, flags=None):
        """
        Open the IMAP mailbox `url` with a proxy ticket for `serviceUrl`.

        @return: A deferred that fires with (stream, proxy ticket).
        """
        service = self.getProxiedService(ProxiedServiceType.IMAP)
        service.setServiceUrl(serviceUrl)
        service.setMailbox(url)
        service.setOptions(flags)
        yield self.initializeProxiedService(service)
        stream = yield service.open()
        return (stream, service.getProxyTicket())
