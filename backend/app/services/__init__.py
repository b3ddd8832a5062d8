"""Ordinal Launchpad minting core services"""
from .actor import Actor, ActorType
from .errors import LaunchpadError
from .chain_client import MempoolClient, TxStatus
from .snapshots import AllocationSnapshot, CollectionState, PhaseState, WhitelistEntryState

__all__ = [
    "Actor",
    "ActorType",
    "LaunchpadError",
    "MempoolClient",
    "TxStatus",
    # Typed engine rows
    "AllocationSnapshot",
    "CollectionState",
    "PhaseState",
    "WhitelistEntryState",
]
