"""Options, errors and logging shared by every gridfleet process."""

from gridfleet.core.errors import (
    GridfleetError,
    InstanceNeverStarted,
    RemoteCallError,
    TeardownError,
    TeardownReport,
)
from gridfleet.core.log import configure_logging
from gridfleet.core.options import DispatcherOptions, GridMode, Options, RPCOptions, load_options

__all__ = [
    "DispatcherOptions",
    "GridMode",
    "GridfleetError",
    "InstanceNeverStarted",
    "Options",
    "RPCOptions",
    "RemoteCallError",
    "TeardownError",
    "TeardownReport",
    "configure_logging",
    "load_options",
]
