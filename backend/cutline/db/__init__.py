# Database module
from cutline.db.repository import SqlJobRepository

__all__ = ["SqlJobRepository"]
