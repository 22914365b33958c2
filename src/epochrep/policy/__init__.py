"""Protocol parameter loading."""

from epochrep.policy.resolver import ProtocolParams

__all__ = ["ProtocolParams"]
