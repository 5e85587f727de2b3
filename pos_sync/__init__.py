# Import the local store tables so they are registered with SQLModel
from pos_sync.models import local_store
from pos_sync.schemas import sync
from pos_sync.core import config, exceptions
from pos_sync.database import engine

__all__ = [
    "local_store",
    "sync",
    "config",
    "exceptions",
    "engine",
]
