from __future__ import annotations

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

_BOOTSTRAPPED = False
_MPI_AVAILABLE = False


def bootstrap_mpi() -> bool:
    """
    Import mpi4py once so that MPI is initialized before petsc4py.

    Returns True when mpi4py is importable. Serial runs (comm=None) never
    need it, so a missing mpi4py is reported rather than raised.
    """
    global _BOOTSTRAPPED, _MPI_AVAILABLE
    if _BOOTSTRAPPED:
        return _MPI_AVAILABLE
    _BOOTSTRAPPED = True

    try:
        from mpi4py import MPI  # noqa: F401
    except ImportError:
        logger.debug("mpi4py not available; running serial only")
        _MPI_AVAILABLE = False
        return False
    _MPI_AVAILABLE = True
    return True


def bootstrap_mpi_before_petsc() -> None:
    bootstrap_mpi()


def comm_world() -> Optional[Any]:
    """MPI.COMM_WORLD when it has more than one rank, else None (serial)."""
    if not bootstrap_mpi():
        return None
    from mpi4py import MPI

    comm = MPI.COMM_WORLD
    return comm if comm.Get_size() > 1 else None
