# Application modules
from txcasclient.couchdb_pgt_storage import CouchDBPGTStorageFactory
from txcasclient.db_pgt_storage import DBPGTStorageFactory
from txcasclient.file_pgt_storage import FilePGTStorageFactory
from txcasclient.in_memory_pgt_storage import InMemoryPGTStorageFactory

filePGTStorageFactory = FilePGTStorageFactory()
inMemoryPGTStorageFactory = InMemoryPGTStorageFactory()
couchDBPGTStorageFactory = CouchDBPGTStorageFactory()
dbPGTStorageFactory = DBPGTStorageFactory()
