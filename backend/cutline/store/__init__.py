# Job store module
from cutline.store.job_store import JobStore

__all__ = ["JobStore"]
