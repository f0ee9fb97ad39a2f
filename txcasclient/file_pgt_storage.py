# Standard library
import os
import os.path
import tempfile
from textwrap import dedent
import uuid

# Application modules
from txcasclient.exceptions import (
    CASConfigError, DuplicatePGTIou, PGTNotFound, PGTStorageError)
from txcasclient.interface import IPGTStorage, IPGTStorageFactory
from txcasclient.pgt_storage import check_pgt_iou, generate_pgt_storage
from txcasclient.settings import get_bool

# External modules
from twisted.internet import defer
from twisted.plugin import IPlugin
from twisted.python import log
from zope.interface import implementer


@implementer(IPlugin, IPGTStorageFactory)
class FilePGTStorageFactory(object):

    tag = "file_pgt_storage"

    opt_help = dedent('''\
            A PGT storage that keeps each PGT in a plain file named
            after its PGT IOU.  The directory must be an absolute path
            that is shared by every process handling the PGT callback
            and the ticket validation.
            Valid options include:

            - path
            - debug
            ''')

    opt_usage = '''A colon-separated key=value list.'''

    def generatePGTStorage(self, argstring=""):
        return generate_pgt_storage(
            FilePGTStorage,
            'FilePGTStorage',
            argstring,
            converters={'_debug': get_bool},
            settings_xlate={'debug': '_debug'})


@implementer(IPGTStorage)
class FilePGTStorage(object):
    """
    Stores PGTs in files.

    Each record is the file `<path>/<pgt_iou>.plain`.  A write fails if
    the file already exists.  A read claims the file with an atomic
    rename before reading and deleting it, so only one reader can ever
    obtain a given PGT.
    """
    suffix = '.plain'

    def __init__(self, path=None, _debug=False):
        if path is None or path == '':
            path = tempfile.gettempdir()
        if not os.path.isabs(path):
            raise CASConfigError(
                "An absolute path is needed for PGT storage to file, got '%s'." % path)
        self.path = os.path.normpath(path)
        self._debug = _debug
        self._initialized = False

    def debug(self, msg):
        if self._debug:
            log.msg(msg)

    def getStorageInfo(self):
        return "path=`%s'" % self.path

    def init(self):
        if self._initialized:
            return defer.succeed(None)
        if not os.path.isdir(self.path):
            os.makedirs(self.path, 0o700, exist_ok=True)
        self._initialized = True
        self.debug("[DEBUG][FilePGTStorage] Initialized, %s." % self.getStorageInfo())
        return defer.succeed(None)

    def getPGTIouFilename(self, pgt_iou):
        check_pgt_iou(pgt_iou)
        return os.path.join(self.path, pgt_iou + self.suffix)

    def _write(self, pgt, pgt_iou):
        fname = self.getPGTIouFilename(pgt_iou)
        try:
            fd = os.open(fname, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            raise DuplicatePGTIou("File exists: `%s'." % fname)
        except OSError as ex:
            raise PGTStorageError("Could not open `%s': %s" % (fname, ex))
        with os.fdopen(fd, 'w') as f:
            f.write(pgt)
        self.debug("[DEBUG][FilePGTStorage] Wrote PGT for IOU '%s'." % pgt_iou)

    def write(self, pgt, pgt_iou):
        return defer.maybeDeferred(self._write, pgt, pgt_iou)

    def _read(self, pgt_iou):
        fname = self.getPGTIouFilename(pgt_iou)
        claimed = "%s.%s.claimed" % (fname, uuid.uuid4().hex)
        try:
            os.rename(fname, claimed)
        except FileNotFoundError:
            raise PGTNotFound("No such file `%s'." % fname)
        try:
            with open(claimed, 'r') as f:
                pgt = f.readline().strip()
        finally:
            os.unlink(claimed)
        if pgt == '':
            raise PGTNotFound("Could not read PGT from `%s'." % fname)
        self.debug("[DEBUG][FilePGTStorage] Read PGT for IOU '%s'." % pgt_iou)
        return pgt

    def read(self, pgt_iou):
        return defer.maybeDeferred(self._read, pgt_iou)
