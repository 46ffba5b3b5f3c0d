"""Tool-call transport between the fleet manager and its services."""

from gridfleet.rpc.client import DispatcherClient, InstanceClient, ToolClient

__all__ = ["DispatcherClient", "InstanceClient", "ToolClient"]
