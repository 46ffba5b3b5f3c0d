"""Services run inside forked processes.

The concrete services are imported from their modules directly
(``gridfleet.rpc.server.instance``, ``gridfleet.rpc.server.dispatcher``) so
that importing the base does not pull in the process helpers.
"""

from gridfleet.rpc.server.base import ToolService

__all__ = ["ToolService"]
