from flyagents.models.machine import AgentMachine
from flyagents.models.secret import AgentVmSecrets
from flyagents.models.snapshot import AgentSnapshot

__all__ = ["AgentMachine", "AgentSnapshot", "AgentVmSecrets"]
