"""Chunk attempt lifecycle state machine.

Each top-level chunk (and each half produced by splitting) gets its own
FSM instance. The uploader fires an event before acting on a decision,
so an illegal sequence -- e.g. retrying after a fatal failure -- raises
``TransitionNotAllowed`` instead of silently continuing.

The FSM is purely a validation tool: it holds no counters and performs
no I/O.
"""

from __future__ import annotations

from statemachine import State, StateMachine


class ChunkAttemptSM(StateMachine):
    """Six-state lifecycle of one chunk upload attempt.

    States:
        attempting     -- Insert request in flight on the active connection.
        splitting      -- Oversized chunk handed to two independent halves.
        reconnecting   -- Connection discarded, new one being created.
        backoff        -- Waiting before retrying on the same connection.
        succeeded      -- Chunk done; credited ids known.
        fatally_failed -- Chunk abandoned; the run aborts.

    Only the two terminal states are ``final=True``; they declare no
    outgoing transitions.
    """

    attempting = State("attempting", initial=True, value="attempting")
    splitting = State("splitting", value="splitting")
    reconnecting = State("reconnecting", value="reconnecting")
    backoff = State("backoff", value="backoff")
    succeeded = State("succeeded", final=True, value="succeeded")
    fatally_failed = State("fatally_failed", final=True, value="fatally_failed")

    succeed = attempting.to(succeeded)
    fail_fatally = attempting.to(fatally_failed)
    split = attempting.to(splitting)
    reconnect = attempting.to(reconnecting)
    back_off = attempting.to(backoff)
    retry = reconnecting.to(attempting) | backoff.to(attempting)
    join = splitting.to(succeeded)
    abort = splitting.to(fatally_failed) | reconnecting.to(fatally_failed)


def create_chunk_fsm() -> ChunkAttemptSM:
    return ChunkAttemptSM()
