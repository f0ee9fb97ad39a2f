
#=======================================================================
# Exceptions
#=======================================================================

class CASError(Exception):
    pass

class CASConfigError(CASError):
    pass

class OutOfSequenceError(CASError):
    """
    An API was called before the call it depends on (e.g. reading the
    user before authentication was checked).
    """

class InvalidTicketSpec(CASError):
    pass

class NotHTTPSError(CASError):
    pass

#-----------------------------------------------------------------------
# Validation
#-----------------------------------------------------------------------

class NoServerResponse(CASError):
    pass

class BadServerResponse(CASError):

    def __init__(self, msg="", response=None):
        CASError.__init__(self, msg)
        self.response = response

class AuthenticationFailure(CASError):

    def __init__(self, code="", message="", response=None):
        CASError.__init__(self, "Ticket not validated (code=`%s', message=`%s')" % (code, message))
        self.code = code
        self.message = message
        self.response = response

class ProxyNotAllowed(CASError):

    def __init__(self, proxies=None):
        if proxies is None:
            proxies = []
        CASError.__init__(self, "Proxy not allowed: %s" % ', '.join(proxies))
        self.proxies = list(proxies)

#-----------------------------------------------------------------------
# Proxy tickets and proxied services
#-----------------------------------------------------------------------

PT_NO_SERVER_RESPONSE = 1
PT_BAD_SERVER_RESPONSE = 2
PT_FAILURE = 3

class ProxyTicketError(CASError):

    def __init__(self, msg, code=PT_FAILURE):
        CASError.__init__(self, msg)
        self.code = code

class ProxiedServiceError(CASError):
    pass

#-----------------------------------------------------------------------
# PGT storage
#-----------------------------------------------------------------------

class PGTStorageError(CASError):
    pass

class DuplicatePGTIou(PGTStorageError):
    pass

class PGTNotFound(PGTStorageError):
    pass

class InvalidPGTIou(PGTStorageError):
    pass

#-----------------------------------------------------------------------
# Inbound requests
#-----------------------------------------------------------------------

class BadRequestError(CASError):
    pass
