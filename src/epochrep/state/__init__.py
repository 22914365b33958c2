"""Replicated state — the attestation ledger and the protocol and identity observers."""

from epochrep.state.identity_state import IdentityState, TransitionPlan
from epochrep.state.ledger import AttestationLedger
from epochrep.state.protocol_state import ProtocolState

__all__ = ["IdentityState", "TransitionPlan", "AttestationLedger", "ProtocolState"]
