"""Process helpers for gridfleet services.

  - Instances: worker services, standalone or promoted to grid master.
  - Dispatchers: coordinator nodes that hand out Instances.
  - ProcessManager: forks service processes and kills pid sets.
"""

from gridfleet.processes.dispatchers import Dispatchers
from gridfleet.processes.instances import Instances
from gridfleet.processes.manager import ProcessManager
from gridfleet.processes.registry import ConnectionRegistry

__all__ = ["ConnectionRegistry", "Dispatchers", "Instances", "ProcessManager"]
