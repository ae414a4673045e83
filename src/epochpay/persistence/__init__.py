"""Persistence — append-only event log and JSON state snapshots."""

from epochpay.persistence.event_log import EventKind, EventLog, EventRecord
from epochpay.persistence.state_store import StateStore

__all__ = ["EventKind", "EventLog", "EventRecord", "StateStore"]
