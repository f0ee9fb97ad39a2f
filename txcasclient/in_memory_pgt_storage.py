# Standard library
from textwrap import dedent

# Application modules
from txcasclient.exceptions import DuplicatePGTIou, PGTNotFound
from txcasclient.interface import IPGTStorage, IPGTStorageFactory
from txcasclient.pgt_storage import generate_pgt_storage
from txcasclient.settings import get_bool

# External modules
from twisted.internet import defer, reactor
from twisted.plugin import IPlugin
from twisted.python import log
from zope.interface import implementer


@implementer(IPlugin, IPGTStorageFactory)
class InMemoryPGTStorageFactory(object):

    tag = "memory_pgt_storage"

    opt_help = dedent('''\
            A PGT storage that keeps PGTs in local memory, like a
            cache.  Records that are not read within `lifespan`
            seconds are discarded.  It is constrained to a single
            process, so the PGT callback must be handled by the same
            process that validates tickets.
            Valid options include:

            - lifespan
            - debug
            ''')

    opt_usage = '''A colon-separated key=value list.'''

    def generatePGTStorage(self, argstring=""):
        return generate_pgt_storage(
            InMemoryPGTStorage,
            'InMemoryPGTStorage',
            argstring,
            converters={'lifespan': int, '_debug': get_bool},
            settings_xlate={'debug': '_debug'})


@implementer(IPGTStorage)
class InMemoryPGTStorage(object):
    """
    A PGT storage that exists entirely in system memory.
    """
    lifespan = 60 * 5

    def __init__(self, lifespan=None, reactor=reactor, _debug=False):
        self.reactor = reactor
        if lifespan is not None:
            self.lifespan = lifespan
        self._pgts = {}
        self._delays = {}
        self._debug = _debug

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def init(self):
        return defer.succeed(None)

    def write(self, pgt, pgt_iou):
        if pgt_iou in self._pgts:
            return defer.fail(DuplicatePGTIou(
                "PGT IOU '%s' has already been stored." % pgt_iou))
        self._pgts[pgt_iou] = pgt
        self._delays[pgt_iou] = self.reactor.callLater(
            self.lifespan, self.expirePGT, pgt_iou)
        self.debug("[DEBUG][InMemoryPGTStorage] Added PGT IOU '%s'." % pgt_iou)
        return defer.succeed(None)

    def expirePGT(self, pgt_iou):
        self._pgts.pop(pgt_iou, None)
        self._delays.pop(pgt_iou, None)
        self.debug("[DEBUG][InMemoryPGTStorage] Expired PGT IOU '%s'." % pgt_iou)

    def read(self, pgt_iou):
        try:
            pgt = self._pgts.pop(pgt_iou)
        except KeyError:
            return defer.fail(PGTNotFound("PGT IOU '%s' is not stored." % pgt_iou))
        dc = self._delays.pop(pgt_iou, None)
        if dc is not None and dc.active():
            dc.cancel()
        self.debug("[DEBUG][InMemoryPGTStorage] Consumed PGT IOU '%s'." % pgt_iou)
        return defer.succeed(pgt)
