"""Replay error taxonomy.

Two families:

- Fatal errors unwind the whole replay. Any observer touched by the
  replay must be discarded by the caller; nothing derived from it
  (roots, paths, nullifier sets) may be used.
- Recoverable errors reject a single user-state-transition event. The
  engine logs and records the skip, state stays exactly as it was before
  the event, and replay continues.
"""

from __future__ import annotations


class ReplayError(Exception):
    """Base class for every error raised while replaying the event log."""

    fatal = True


class SequenceFault(ReplayError):
    """The sequencer named an empty or unknown channel, or events were left over."""


class EpochMismatch(ReplayError):
    """An event's epoch differs from the observer's current epoch."""

    def __init__(self, what: str, epoch: int, current_epoch: int) -> None:
        super().__init__(
            f"{what} epoch ({epoch}) does not match current epoch ({current_epoch})"
        )
        self.epoch = epoch
        self.current_epoch = current_epoch


class ConsistencyFault(ReplayError):
    """Locally recomputed state disagrees with what the chain asserts."""


class GlobalStateTreeFull(ReplayError):
    """The global state tree has no free leaf left for a sign-up or transition."""


class IdentityNotSignedUp(ReplayError):
    """An identity-scoped replay ended without observing the identity's sign-up."""


class ReplayAborted(ReplayError):
    """The caller cancelled the replay at an event boundary."""


class RecoverableReplayError(ReplayError):
    """A single event is rejected; replay continues without it."""

    fatal = False


class ProofRejected(RecoverableReplayError):
    """The proof verifier rejected a user-state-transition proof."""


class DuplicateNullifier(RecoverableReplayError):
    """A transition reuses a nullifier that is already spent."""

    def __init__(self, nullifier: int) -> None:
        super().__init__(f"nullifier {nullifier} already spent")
        self.nullifier = nullifier
