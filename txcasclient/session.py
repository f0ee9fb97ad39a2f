# Standard library
import copy

# Application modules
from txcasclient.interface import ISessionStore

# External modules
from twisted.internet import defer, reactor
from twisted.python import log
from zope.interface import implementer


class Session(object):
    """
    The CAS state kept for one user session.
    """

    UNAUTH_COUNT_UNSET = -2

    def __init__(self, user='', attributes=None, pgt='', proxies=None,
                 unauthCount=UNAUTH_COUNT_UNSET, authChecked=False,
                 serviceCookies=None, data=None):
        self.user = user
        if attributes is None:
            attributes = {}
        self.attributes = attributes
        self.pgt = pgt
        if proxies is None:
            proxies = []
        self.proxies = proxies
        self.unauthCount = unauthCount
        self.authChecked = authChecked
        if serviceCookies is None:
            serviceCookies = {}
        self.serviceCookies = serviceCookies
        # Application data that is not CAS state; kept across renames.
        if data is None:
            data = {}
        self.data = data

    def clearIdentity(self):
        """
        Forget the authenticated identity.
        """
        self.user = ''
        self.attributes = {}
        self.pgt = ''
        self.proxies = []

    def clearCAS(self):
        """
        Forget all CAS state, keeping application data.
        """
        self.clearIdentity()
        self.unauthCount = self.UNAUTH_COUNT_UNSET
        self.authChecked = False
        self.serviceCookies = {}

    def copy(self):
        return copy.deepcopy(self)

    def __eq__(self, other):
        if not isinstance(other, Session):
            return NotImplemented
        return self.__dict__ == other.__dict__

    def __ne__(self, other):
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __repr__(self):
        return "<Session user=%r proxies=%r>" % (self.user, self.proxies)


@implementer(ISessionStore)
class InMemorySessionStore(object):
    """
    Session store kept in local memory.  Sessions expire after
    `lifespan` seconds without being saved.
    """
    lifespan = 60 * 60 * 8

    def __init__(self, lifespan=None, reactor=reactor, _debug=False):
        self.reactor = reactor
        if lifespan is not None:
            self.lifespan = lifespan
        self._sessions = {}
        self._delays = {}
        self._debug = _debug

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def _touch(self, session_id):
        dc = self._delays.get(session_id)
        if dc is not None and dc.active():
            dc.reset(self.lifespan)
        else:
            self._delays[session_id] = self.reactor.callLater(
                self.lifespan, self._expire, session_id)

    def _expire(self, session_id):
        self._sessions.pop(session_id, None)
        self._delays.pop(session_id, None)
        self.debug("[DEBUG][InMemorySessionStore] Expired session '%s'." % session_id)

    def _cancel(self, session_id):
        dc = self._delays.pop(session_id, None)
        if dc is not None and dc.active():
            dc.cancel()

    def get(self, session_id):
        session = self._sessions.get(session_id)
        if session is not None:
            session = session.copy()
        return defer.succeed(session)

    def set(self, session_id, session):
        self._sessions[session_id] = session.copy()
        self._touch(session_id)
        return defer.succeed(None)

    def destroy(self, session_id):
        self._sessions.pop(session_id, None)
        self._cancel(session_id)
        self.debug("[DEBUG][InMemorySessionStore] Destroyed session '%s'." % session_id)
        return defer.succeed(None)

    def rename(self, old_id, new_id):
        if old_id == new_id:
            return defer.succeed(None)
        session = self._sessions.pop(old_id, None)
        self._cancel(old_id)
        if session is None:
            session = Session()
        self._sessions[new_id] = session
        self._touch(new_id)
        self.debug("[DEBUG][InMemorySessionStore] Renamed session '%s' to '%s'." % (old_id, new_id))
        return defer.succeed(None)
