from fastapi import Depends, Request

from docworker.v1.core.exceptions import StoreUnavailableError
from docworker.v1.infra.jobs.store import JobStore
from docworker.v1.infra.workers.bootstrap import WorkerBootstrap


def get_store(request: Request) -> JobStore:
    """Dependency injection function for the job store built at startup."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise StoreUnavailableError("Job store is not initialized")
    return store


def get_bootstrap(request: Request) -> WorkerBootstrap | None:
    """Worker supervisor when workers run inside the API process."""
    return getattr(request.app.state, "bootstrap", None)


StoreDep = Depends(get_store)
BootstrapDep = Depends(get_bootstrap)
