# Standard library
from html import escape as escape_html


class Outcome(object):
    """
    How request processing continues after a CAS operation.

    - CONTINUE: the application handles the request.  `authenticated`
      tells whether the user is authenticated.
    - REDIRECT: the response must be a redirect to `url`.
    - TERMINATE: the response is complete (`code`, `body`).  `error` is
      the exception that caused a failure, if any.
    """
    CONTINUE = 'continue'
    REDIRECT = 'redirect'
    TERMINATE = 'terminate'

    def __init__(self, kind, authenticated=False, url=None, code=200, body='', error=None):
        self.kind = kind
        self.authenticated = authenticated
        self.url = url
        self.code = code
        self.body = body
        self.error = error

    @classmethod
    def proceed(cls, authenticated):
        return cls(cls.CONTINUE, authenticated=authenticated)

    @classmethod
    def redirect(cls, url):
        return cls(cls.REDIRECT, url=url, code=302)

    @classmethod
    def terminate(cls, code=200, body=''):
        return cls(cls.TERMINATE, code=code, body=body)

    @classmethod
    def failure(cls, error, code=403, title="CAS Authentication failed!"):
        body = (
            "<html><head><title>%(title)s</title></head><body>"
            "<h1>%(title)s</h1><p>%(msg)s</p></body></html>") % {
                'title': escape_html(title),
                'msg': escape_html(str(error))}
        return cls(cls.TERMINATE, code=code, body=body, error=error)

    @property
    def isContinue(self):
        return self.kind == self.CONTINUE

    @property
    def isRedirect(self):
        return self.kind == self.REDIRECT

    @property
    def isTerminated(self):
        return self.kind == self.TERMINATE

    def apply(self, request):
        """
        Write this outcome onto a `twisted.web` request.

        @return: The response body for REDIRECT and TERMINATE outcomes,
            None for CONTINUE.
        """
        if self.kind == self.REDIRECT:
            request.redirect(self.url.encode('utf-8'))
            return b''
        if self.kind == self.TERMINATE:
            request.setResponseCode(self.code)
            body = self.body
            if not isinstance(body, bytes):
                body = body.encode('utf-8')
            return body
        return None

    def __repr__(self):
        if self.kind == self.REDIRECT:
            return "<Outcome redirect %s>" % self.url
        if self.kind == self.TERMINATE:
            return "<Outcome terminate %d>" % self.code
        return "<Outcome continue authenticated=%s>" % self.authenticated
