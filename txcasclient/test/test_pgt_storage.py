
# Standard modules
import json
import os
import os.path
from urllib.parse import unquote, urlparse
# Application modules
from txcasclient.couchdb_pgt_storage import CouchDBPGTStorage, CouchDBPGTStorageFactory
from txcasclient.db_pgt_storage import DBPGTStorage, DBPGTStorageFactory, parse_connect_args
from txcasclient.exceptions import (
    CASConfigError, DuplicatePGTIou, InvalidPGTIou, PGTNotFound)
from txcasclient.file_pgt_storage import FilePGTStorage, FilePGTStorageFactory
from txcasclient.in_memory_pgt_storage import InMemoryPGTStorage, InMemoryPGTStorageFactory
from txcasclient.interface import IPGTStorage, IPGTStorageFactory
from txcasclient.settings import load_defaults
from txcasclient.test.fakes import makeFakeTreqResponse
# External modules
import mock
from twisted.enterprise import adbapi
from twisted.internet import defer, task
from twisted.trial.unittest import TestCase
from zope.interface.verify import verifyObject


class PGTStorageTester(object):
    """
    Tests every PGT storage must pass.
    """
    pgt = "PGT-1-0123456789abcdef"
    pgt_iou = "PGTIOU-1-fedcba9876543210"

    def setUp(self):
        self.clock = task.Clock()
        self.storage = self.getStorage(self.clock)
        return self.storage.init()

    def getStorage(self, clock):
        """
        Implement this to create and return a PGT storage.
        """
        raise NotImplementedError()

    def test_provides_interface(self):
        self.assertTrue(verifyObject(IPGTStorage, self.storage))

    @defer.inlineCallbacks
    def test_init_is_idempotent(self):
        yield self.storage.init()
        yield self.storage.init()

    @defer.inlineCallbacks
    def test_write_then_read(self):
        storage = self.storage
        yield storage.write(self.pgt, self.pgt_iou)
        pgt = yield storage.read(self.pgt_iou)
        self.assertEqual(pgt, self.pgt)

    @defer.inlineCallbacks
    def test_read_deletes(self):
        storage = self.storage
        yield storage.write(self.pgt, self.pgt_iou)
        yield storage.read(self.pgt_iou)
        yield self.assertFailure(storage.read(self.pgt_iou), PGTNotFound)

    @defer.inlineCallbacks
    def test_read_missing(self):
        yield self.assertFailure(self.storage.read(self.pgt_iou), PGTNotFound)

    @defer.inlineCallbacks
    def test_duplicate_write(self):
        storage = self.storage
        yield storage.write(self.pgt, self.pgt_iou)
        yield self.assertFailure(
            storage.write("PGT-2-other", self.pgt_iou),
            DuplicatePGTIou)
        pgt = yield storage.read(self.pgt_iou)
        self.assertEqual(pgt, self.pgt)

    @defer.inlineCallbacks
    def test_independent_ious(self):
        storage = self.storage
        yield storage.write(self.pgt, self.pgt_iou)
        yield storage.write("PGT-2-other", "PGTIOU-2-other")
        pgt = yield storage.read("PGTIOU-2-other")
        self.assertEqual(pgt, "PGT-2-other")
        pgt = yield storage.read(self.pgt_iou)
        self.assertEqual(pgt, self.pgt)


class InMemoryPGTStorageTest(PGTStorageTester, TestCase):

    def getStorage(self, clock):
        return InMemoryPGTStorage(lifespan=60, reactor=clock)

    @defer.inlineCallbacks
    def test_expires(self):
        storage = self.storage
        yield storage.write(self.pgt, self.pgt_iou)
        self.clock.advance(61)
        yield self.assertFailure(storage.read(self.pgt_iou), PGTNotFound)

    @defer.inlineCallbacks
    def test_read_cancels_expiry(self):
        storage = self.storage
        yield storage.write(self.pgt, self.pgt_iou)
        yield storage.read(self.pgt_iou)
        self.assertEqual(self.clock.getDelayedCalls(), [])


class FilePGTStorageTest(PGTStorageTester, TestCase):

    def getStorage(self, clock):
        self.path = os.path.abspath(self.mktemp())
        return FilePGTStorage(path=self.path)

    def test_relative_path_rejected(self):
        self.assertRaises(CASConfigError, FilePGTStorage, path='relative/pgts')

    @defer.inlineCallbacks
    def test_file_layout(self):
        yield self.storage.write(self.pgt, self.pgt_iou)
        fname = os.path.join(self.path, self.pgt_iou + '.plain')
        self.assertTrue(os.path.exists(fname))
        yield self.storage.read(self.pgt_iou)
        self.assertFalse(os.path.exists(fname))
        self.assertEqual(os.listdir(self.path), [])

    @defer.inlineCallbacks
    def test_bad_iou(self):
        yield self.assertFailure(
            self.storage.write(self.pgt, "PGTIOU-../../etc/passwd"),
            InvalidPGTIou)
        yield self.assertFailure(
            self.storage.read("not-an-iou"),
            InvalidPGTIou)


class DBPGTStorageTest(PGTStorageTester, TestCase):

    def getStorage(self, clock):
        path = os.path.abspath(self.mktemp())
        pool = adbapi.ConnectionPool(
            'sqlite3', path, check_same_thread=False, cp_min=1, cp_max=1)
        self.addCleanup(pool.close)
        return DBPGTStorage('sqlite3', table='test_pgts', create_table=True, pool=pool)

    def test_bad_table_name(self):
        self.assertRaises(
            CASConfigError,
            DBPGTStorage, 'sqlite3', table='pgts; DROP TABLE x', pool=mock.Mock())

    def test_parse_connect_args(self):
        self.assertEqual(
            parse_connect_args('database/pgt.db, timeout/5'),
            {'database': 'pgt.db', 'timeout': '5'})
        self.assertRaises(CASConfigError, parse_connect_args, 'database')


class CouchDBPGTStorageTest(PGTStorageTester, TestCase):
    couch_host = 'couch.example.org'
    couch_port = 5984
    couch_db = 'cas_pgts'
    couch_user = 'couchuser'
    couch_passwd = 'couchpass'

    def setUp(self):
        self.requests = []
        self.db_exists = False
        self.docs = {}
        self.revision = 0
        patcher = mock.patch("txcasclient.couchdb_pgt_storage.createNonVerifyingHTTPClient")
        self.createNonVerifyingHTTPClient = patcher.start()
        self.addCleanup(patcher.stop)
        patcher = mock.patch("txcasclient.couchdb_pgt_storage.createVerifyingHTTPClient")
        self.createVerifyingHTTPClient = patcher.start()
        self.addCleanup(patcher.stop)
        httpClient = mock.Mock()
        self.createNonVerifyingHTTPClient.return_value = httpClient
        self.createVerifyingHTTPClient.return_value = httpClient
        httpClient.get.side_effect = self.simulateHTTPGet
        httpClient.put.side_effect = self.simulateHTTPPut
        httpClient.delete.side_effect = self.simulateHTTPDelete
        return super(CouchDBPGTStorageTest, self).setUp()

    def getStorage(self, clock):
        return CouchDBPGTStorage(
            self.couch_host, self.couch_port, self.couch_db,
            self.couch_user, self.couch_passwd,
            use_https=True, reactor=clock)

    def _respond(self, code, doc):
        return defer.succeed(makeFakeTreqResponse(
            code=code, body=json.dumps(doc).encode('utf-8')))

    def _docID(self, url):
        path = urlparse(url).path
        parts = path.split('/')
        if len(parts) > 2:
            return unquote(parts[2])
        return None

    def simulateHTTPPut(self, url, **kwds):
        self.requests.append(('PUT', url, kwds))
        doc_id = self._docID(url)
        if doc_id is None:
            if self.db_exists:
                return self._respond(412, {'error': 'file_exists'})
            self.db_exists = True
            return self._respond(201, {'ok': True})
        if doc_id in self.docs:
            return self._respond(409, {'error': 'conflict'})
        self.revision += 1
        doc = json.loads(kwds['data'].decode('utf-8'))
        doc['_id'] = doc_id
        doc['_rev'] = '%d-abc' % self.revision
        self.docs[doc_id] = doc
        return self._respond(201, {'ok': True, 'id': doc_id, 'rev': doc['_rev']})

    def simulateHTTPGet(self, url, **kwds):
        self.requests.append(('GET', url, kwds))
        doc = self.docs.get(self._docID(url))
        if doc is None:
            return self._respond(404, {'error': 'not_found'})
        return self._respond(200, doc)

    def simulateHTTPDelete(self, url, **kwds):
        self.requests.append(('DELETE', url, kwds))
        doc_id = self._docID(url)
        doc = self.docs.get(doc_id)
        if doc is None:
            return self._respond(404, {'error': 'not_found'})
        if doc['_rev'] != kwds['params']['rev']:
            return self._respond(409, {'error': 'conflict'})
        del self.docs[doc_id]
        return self._respond(200, {'ok': True})

    @defer.inlineCallbacks
    def test_lost_race_is_not_found(self):
        storage = self.storage
        yield storage.write(self.pgt, self.pgt_iou)
        doc = self.docs[self.pgt_iou]
        original_delete = self.simulateHTTPDelete

        def competingDelete(url, **kwds):
            # Another reader consumed the document after our GET.
            doc['_rev'] = 'another-rev'
            return original_delete(url, **kwds)

        self.createVerifyingHTTPClient.return_value.delete.side_effect = competingDelete
        yield self.assertFailure(storage.read(self.pgt_iou), PGTNotFound)

    @defer.inlineCallbacks
    def test_uses_https_and_auth(self):
        yield self.storage.write(self.pgt, self.pgt_iou)
        method, url, kwds = self.requests[-1]
        self.assertTrue(url.startswith('https://couch.example.org:5984/cas_pgts/'))
        self.assertEqual(kwds['auth'], (self.couch_user, self.couch_passwd))


class PGTStorageFactoryTest(TestCase):

    def setUp(self):
        patcher = mock.patch("txcasclient.pgt_storage.load_settings")
        self.load_settings = patcher.start()
        self.addCleanup(patcher.stop)
        self.load_settings.return_value = load_defaults({
            'CouchDB': {
                'host': 'couch.example.org',
                'port': '5984',
                'db': 'cas_pgts',
                'user': 'couchuser',
                'passwd': 'secret'}})

    def test_factories_provide_interface(self):
        for factory in (
                FilePGTStorageFactory(),
                InMemoryPGTStorageFactory(),
                CouchDBPGTStorageFactory(),
                DBPGTStorageFactory()):
            self.assertTrue(verifyObject(IPGTStorageFactory, factory))

    def test_file_factory_argstring(self):
        path = os.path.abspath(self.mktemp())
        storage = FilePGTStorageFactory().generatePGTStorage("path=%s" % path)
        self.assertIsInstance(storage, FilePGTStorage)
        self.assertEqual(storage.path, path)

    def test_memory_factory_converts_lifespan(self):
        storage = InMemoryPGTStorageFactory().generatePGTStorage("lifespan=30")
        self.assertEqual(storage.lifespan, 30)

    def test_couchdb_factory_reads_settings(self):
        storage = CouchDBPGTStorageFactory().generatePGTStorage("https=0:port=6984")
        self.assertEqual(storage._couch_host, 'couch.example.org')
        self.assertEqual(storage._couch_port, 6984)
        self.assertEqual(storage._couch_passwd, 'secret')
        self.assertEqual(storage._scheme, 'http://')

    def test_missing_settings(self):
        self.load_settings.return_value = load_defaults({})
        self.assertRaises(
            CASConfigError,
            DBPGTStorageFactory().generatePGTStorage, "")

    def test_bad_argstring(self):
        self.assertRaises(
            CASConfigError,
            InMemoryPGTStorageFactory().generatePGTStorage, "lifespan")
