# Standard library
import datetime
import re
from textwrap import dedent

# Application modules
from txcasclient.exceptions import (
    CASConfigError, DuplicatePGTIou, PGTNotFound)
from txcasclient.interface import IPGTStorage, IPGTStorageFactory
from txcasclient.pgt_storage import generate_pgt_storage
from txcasclient.settings import get_bool, parse_argstring

# External modules
from twisted.enterprise import adbapi
from twisted.internet import defer
from twisted.plugin import IPlugin
from twisted.python import log
from zope.interface import implementer

_table_name = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@implementer(IPlugin, IPGTStorageFactory)
class DBPGTStorageFactory(object):

    tag = "db_pgt_storage"

    opt_help = dedent('''\
            A PGT storage that keeps PGTs in a relational database
            table accessed through a DB-API 2.0 module.
            Valid options include:

            - dbapi_name (e.g. sqlite3, psycopg2, MySQLdb)
            - connect (comma-separated key/value pairs passed to
              the module's connect(), e.g. database/var/db/pgt.db)
            - table
            - create_table
            - debug
            ''')

    opt_usage = '''A colon-separated key=value list.'''

    def generatePGTStorage(self, argstring=""):
        return generate_pgt_storage(
            DBPGTStorage,
            'DBPGTStorage',
            argstring,
            converters={
                'connect': parse_connect_args,
                'create_table': get_bool,
                '_debug': get_bool},
            settings_xlate={'debug': '_debug'})


def parse_connect_args(value):
    """
    Parse `key/value,key/value` into keyword arguments for connect().
    """
    if isinstance(value, dict):
        return value
    kwds = {}
    for part in value.split(','):
        part = part.strip()
        if part == '':
            continue
        key, sep, val = part.partition('/')
        if sep == '':
            raise CASConfigError("Connection argument '%s' is not of the form key/value." % part)
        kwds[key] = val
    return kwds


def _placeholder(paramstyle, n):
    if paramstyle == 'qmark':
        return '?'
    if paramstyle == 'numeric':
        return ':%d' % n
    if paramstyle == 'named':
        return ':p%d' % n
    return '%s'


@implementer(IPGTStorage)
class DBPGTStorage(object):
    """
    Stores PGTs in a database table with the columns `pgt_iou` (primary
    key), `pgt` and `created`.

    A read selects and deletes the row in one transaction and only
    succeeds if this transaction deleted it.
    """
    table = 'cas_pgts'

    def __init__(self, dbapi_name, connect=None, table=None, create_table=False,
                 pool=None, _debug=False):
        if table is not None:
            if not _table_name.match(table):
                raise CASConfigError("Invalid PGT table name '%s'." % table)
            self.table = table
        if connect is None:
            connect = {}
        if pool is None:
            pool = adbapi.ConnectionPool(dbapi_name, **connect)
        self.pool = pool
        self.create_table = create_table
        self._debug = _debug
        self._initialized = False

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def _sql(self, template, count):
        paramstyle = getattr(self.pool.dbapi, 'paramstyle', 'qmark')
        params = [_placeholder(paramstyle, n + 1) for n in range(count)]
        return template % dict(
            [('table', self.table)] + [('p%d' % n, p) for n, p in enumerate(params)])

    def _args(self, *args):
        paramstyle = getattr(self.pool.dbapi, 'paramstyle', 'qmark')
        if paramstyle == 'named':
            return dict(('p%d' % (n + 1), arg) for n, arg in enumerate(args))
        return args

    def createTable(self):
        sql = dedent('''\
            CREATE TABLE IF NOT EXISTS %(table)s (
                pgt_iou VARCHAR(255) NOT NULL PRIMARY KEY,
                pgt VARCHAR(255) NOT NULL,
                created VARCHAR(32) NOT NULL
            )''') % {'table': self.table}
        return self.pool.runOperation(sql)

    @defer.inlineCallbacks
    def init(self):
        if self._initialized:
            return None
        if self.create_table:
            yield self.createTable()
        self._initialized = True
        self.debug("[DEBUG][DBPGTStorage] Initialized, table `%s'." % self.table)
        return None

    def _write(self, txn, pgt, pgt_iou):
        sql = self._sql(
            "SELECT pgt_iou FROM %(table)s WHERE pgt_iou = %(p0)s", 1)
        txn.execute(sql, self._args(pgt_iou))
        if txn.fetchone() is not None:
            raise DuplicatePGTIou("PGT IOU '%s' has already been stored." % pgt_iou)
        sql = self._sql(
            "INSERT INTO %(table)s (pgt_iou, pgt, created) VALUES (%(p0)s, %(p1)s, %(p2)s)", 3)
        created = datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S')
        try:
            txn.execute(sql, self._args(pgt_iou, pgt, created))
        except self.pool.dbapi.IntegrityError:
            raise DuplicatePGTIou("PGT IOU '%s' has already been stored." % pgt_iou)

    def write(self, pgt, pgt_iou):
        self.debug("[DEBUG][DBPGTStorage] write(), PGT IOU '%s'." % pgt_iou)
        return self.pool.runInteraction(self._write, pgt, pgt_iou)

    def _read(self, txn, pgt_iou):
        sql = self._sql("SELECT pgt FROM %(table)s WHERE pgt_iou = %(p0)s", 1)
        txn.execute(sql, self._args(pgt_iou))
        row = txn.fetchone()
        if row is None:
            raise PGTNotFound("PGT IOU '%s' is not stored." % pgt_iou)
        sql = self._sql("DELETE FROM %(table)s WHERE pgt_iou = %(p0)s", 1)
        txn.execute(sql, self._args(pgt_iou))
        if txn.rowcount != 1:
            raise PGTNotFound("PGT IOU '%s' was consumed by another request." % pgt_iou)
        return row[0]

    def read(self, pgt_iou):
        self.debug("[DEBUG][DBPGTStorage] read(), PGT IOU '%s'." % pgt_iou)
        return self.pool.runInteraction(self._read, pgt_iou)
