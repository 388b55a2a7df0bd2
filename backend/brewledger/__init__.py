"""brewledger package initializer

Hash-chained audit ledger for brewery inventory and production events.
The `backend` folder is put on sys.path by tests, so imports read
`from brewledger import blockchain`.
"""

from . import db as db
from . import models as models
from . import schemas as schemas
from . import blockchain as blockchain
from . import crud as crud

__all__ = ["db", "models", "schemas", "blockchain", "crud"]
