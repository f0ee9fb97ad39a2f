# Standard library
import datetime
import json
from textwrap import dedent
from urllib.parse import quote

# Application modules
from txcasclient.exceptions import (
    DuplicatePGTIou, PGTNotFound, PGTStorageError)
from txcasclient.http import (
    createNonVerifyingHTTPClient, createVerifyingHTTPClient)
from txcasclient.interface import IPGTStorage, IPGTStorageFactory
from txcasclient.pgt_storage import check_pgt_iou, generate_pgt_storage
from txcasclient.settings import get_bool
from txcasclient.utils import http_status_filter

# External modules
import treq
from twisted.internet import defer, reactor
from twisted.plugin import IPlugin
from twisted.python import log
from twisted.web.http_headers import Headers
from zope.interface import implementer


class CouchDBError(PGTStorageError):
    pass


@implementer(IPlugin, IPGTStorageFactory)
class CouchDBPGTStorageFactory(object):
    tag = "couchdb_pgt_storage"
    opt_help = dedent('''\
            A PGT storage that keeps PGTs as documents in an external
            CouchDB database, keyed by PGT IOU.  Any process that can
            reach the database can read a PGT stored by another.
            Valid options include:

            - couch_host
            - couch_port
            - couch_db
            - couch_user
            - couch_passwd
            - use_https
            - verify_cert
            - debug
            ''')

    opt_usage = '''A colon-separated key=value list.'''

    def generatePGTStorage(self, argstring=""):
        settings_xlate = {
                'host': 'couch_host',
                'port': 'couch_port',
                'db': 'couch_db',
                'user': 'couch_user',
                'passwd': 'couch_passwd',
                'https': 'use_https',
                'debug': '_debug',
            }
        return generate_pgt_storage(
            CouchDBPGTStorage,
            'CouchDB',
            argstring,
            converters={
                'couch_port': int,
                'use_https': get_bool,
                'verify_cert': get_bool,
                '_debug': get_bool},
            settings_xlate=settings_xlate,
            secrets=('couch_passwd',))


@implementer(IPGTStorage)
class CouchDBPGTStorage(object):
    """
    A PGT storage that uses an external CouchDB.

    Each PGT is a document whose id is the PGT IOU.  Reading deletes the
    document with the revision that was read; if another reader deleted
    it first, CouchDB answers with a conflict and this reader gets
    PGTNotFound.
    """

    def __init__(self, couch_host, couch_port, couch_db,
                couch_user, couch_passwd, use_https=True,
                reactor=reactor, _debug=False, verify_cert=True):
        self.reactor = reactor
        self._debug = _debug
        self._couch_host = couch_host
        self._couch_port = couch_port
        self._couch_db = couch_db
        self._couch_user = couch_user
        self._couch_passwd = couch_passwd
        if verify_cert:
            self.httpClient = createVerifyingHTTPClient(reactor)
        else:
            self.httpClient = createNonVerifyingHTTPClient(reactor)
        if use_https:
            self._scheme = 'https://'
        else:
            self._scheme = 'http://'
        self._initialized = False

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def _dbURL(self):
        return '''%(scheme)s%(host)s:%(port)s/%(db)s''' % {
            'scheme': self._scheme,
            'host': self._couch_host,
            'port': self._couch_port,
            'db': self._couch_db}

    def _docURL(self, pgt_iou):
        return '%s/%s' % (self._dbURL(), quote(pgt_iou, safe=''))

    def _auth(self):
        return (self._couch_user, self._couch_passwd)

    @defer.inlineCallbacks
    def init(self):
        """
        Create the database if it does not exist yet.
        """
        if self._initialized:
            return None
        url = self._dbURL()
        self.debug("[DEBUG][CouchDB] init(), url: %s" % url)
        response = yield self.httpClient.put(
                            url,
                            auth=self._auth(),
                            headers=Headers({'Accept': ['application/json']}))
        # 412 means the database already exists.
        response = yield http_status_filter(response, [(201, 202), (412, 412)], CouchDBError)
        yield treq.content(response)
        self._initialized = True
        return None

    @defer.inlineCallbacks
    def write(self, pgt, pgt_iou):
        check_pgt_iou(pgt_iou)
        url = self._docURL(pgt_iou)
        doc = json.dumps({
            'type': 'pgt',
            'pgt': pgt,
            'created': datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S'),
        })
        self.debug("[DEBUG][CouchDB] write(), url: %s" % url)
        response = yield self.httpClient.put(
                            url,
                            data=doc.encode('utf-8'),
                            auth=self._auth(),
                            headers=Headers({
                                'Accept': ['application/json'],
                                'Content-Type': ['application/json']}))
        if response.code == 409:
            yield treq.content(response)
            raise DuplicatePGTIou("PGT IOU '%s' has already been stored." % pgt_iou)
        response = yield http_status_filter(response, [(201, 202)], CouchDBError)
        yield treq.content(response)
        return None

    @defer.inlineCallbacks
    def _fetch_pgt(self, pgt_iou):
        url = self._docURL(pgt_iou)
        self.debug("[DEBUG][CouchDB] _fetch_pgt(), url: %s" % url)
        response = yield self.httpClient.get(
                            url,
                            auth=self._auth(),
                            headers=Headers({'Accept': ['application/json']}))
        if response.code == 404:
            yield treq.content(response)
            return None
        response = yield http_status_filter(response, [(200, 200)], CouchDBError)
        body = yield treq.content(response)
        return json.loads(body.decode('utf-8'))

    @defer.inlineCallbacks
    def _delete_pgt(self, pgt_iou, _rev):
        url = self._docURL(pgt_iou)
        params = {'rev': _rev}
        self.debug('[DEBUG][CouchDB] _delete_pgt(), url: %s' % url)
        self.debug('[DEBUG][CouchDB] _delete_pgt(), params: %s' % str(params))
        response = yield self.httpClient.delete(
                            url,
                            params=params,
                            auth=self._auth(),
                            headers=Headers({'Accept': ['application/json']}))
        if response.code in (404, 409):
            yield treq.content(response)
            return False
        response = yield http_status_filter(response, [(200, 202)], CouchDBError)
        yield treq.content(response)
        return True

    @defer.inlineCallbacks
    def read(self, pgt_iou):
        check_pgt_iou(pgt_iou)
        doc = yield self._fetch_pgt(pgt_iou)
        if doc is None:
            raise PGTNotFound("PGT IOU '%s' is not stored." % pgt_iou)
        deleted = yield self._delete_pgt(pgt_iou, doc['_rev'])
        if not deleted:
            raise PGTNotFound("PGT IOU '%s' was consumed by another request." % pgt_iou)
        return doc['pgt']
