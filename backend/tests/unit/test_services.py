"""Unit tests for Ordinal Launchpad core value types"""
import pytest
from datetime import datetime, timedelta

from app.models.collection import LaunchStatus
from app.models.mint import (
    IN_FLIGHT_STATUSES,
    LINEAR_STATUSES,
    MintStatus,
    RELEASED_STATUSES,
    TERMINAL_STATUSES,
    status_rank,
)
from app.services.actor import Actor, ActorType
from app.services.errors import (
    AllocationExhaustedError,
    CapacityError,
    InvalidTransitionError,
    LaunchpadError,
    MintAuthorizationError,
    NotAdminError,
    PhaseInactiveError,
    RetryLimitExceeded,
)
from app.services.snapshots import AllocationSnapshot, CollectionState, PhaseState, WhitelistEntryState
from app.services.supply_ledger import SupplyCounts

NOW = datetime(2026, 1, 1, 12, 0, 0)


def make_phase(**overrides) -> PhaseState:
    fields = dict(
        id=1,
        collection_id=1,
        phase_name="Public",
        phase_order=0,
        start_time=NOW - timedelta(hours=1),
        end_time=None,
        is_active=True,
        is_completed=False,
        mint_price_sats=1000,
        max_per_wallet=None,
        phase_allocation=None,
        whitelist_only=False,
        whitelist_id=None,
    )
    fields.update(overrides)
    return PhaseState(**fields)


class TestActor:
    """Tests for caller capability resolution"""

    def test_resolve_admin_wallet(self):
        actor = Actor.resolve("bc1qadmin", ["bc1qadmin"])
        assert actor.actor_type == ActorType.ADMIN
        assert actor.is_admin

    def test_resolve_regular_wallet(self):
        actor = Actor.resolve("bc1quser", ["bc1qadmin"])
        assert actor.actor_type == ActorType.WALLET
        assert not actor.is_admin

    def test_resolve_missing_wallet(self):
        assert Actor.resolve(None, ["bc1qadmin"]) is None
        assert Actor.resolve("", []) is None

    def test_system_actor_is_admin(self):
        assert Actor.system("scheduler").is_admin


class TestPhaseState:
    """Tests for phase window rules"""

    def test_window_is_half_open(self):
        phase = make_phase(start_time=NOW, end_time=NOW + timedelta(hours=1))
        assert phase.is_open_at(NOW)
        assert phase.is_open_at(NOW + timedelta(minutes=59))
        assert not phase.is_open_at(NOW + timedelta(hours=1))
        assert not phase.is_open_at(NOW - timedelta(seconds=1))

    def test_open_ended_phase(self):
        phase = make_phase(end_time=None)
        assert phase.is_open_at(NOW + timedelta(days=365))

    def test_inactive_phase_does_not_accept_mints(self):
        assert not make_phase(is_active=False).accepts_mints_at(NOW)
        assert not make_phase(is_completed=True).accepts_mints_at(NOW)
        assert make_phase().accepts_mints_at(NOW)

    def test_end_before_start_rejected(self):
        with pytest.raises(ValueError):
            make_phase(start_time=NOW, end_time=NOW)

    def test_negative_limits_rejected(self):
        with pytest.raises(ValueError):
            make_phase(max_per_wallet=-1)
        with pytest.raises(ValueError):
            make_phase(phase_allocation=-5)
        with pytest.raises(ValueError):
            make_phase(mint_price_sats=-1)


class TestCollectionState:
    """Tests for supply caps"""

    def test_max_supply_uses_lower_cap(self):
        state = CollectionState(id=1, total_supply=100, cap_supply=40, launch_status=LaunchStatus.ACTIVE, is_locked=True)
        assert state.max_supply == 40

    def test_cap_above_total_is_bounded(self):
        state = CollectionState(id=1, total_supply=10, cap_supply=40, launch_status=LaunchStatus.DRAFT, is_locked=False)
        assert state.max_supply == 10

    def test_negative_supply_rejected(self):
        with pytest.raises(ValueError):
            CollectionState(id=1, total_supply=-1, cap_supply=None, launch_status=LaunchStatus.DRAFT, is_locked=False)


class TestAllocationSnapshot:
    """Tests for allocation arithmetic"""

    def test_remaining_never_negative(self):
        snapshot = AllocationSnapshot.build(allowed=2, used=5, is_whitelisted=True)
        assert snapshot.remaining == 0
        assert not snapshot.can_commit()

    def test_unlimited(self):
        snapshot = AllocationSnapshot.build(allowed=None, used=50, is_whitelisted=False)
        assert snapshot.unlimited
        assert snapshot.remaining is None
        assert snapshot.claimable is None
        assert snapshot.can_claim()
        assert snapshot.can_commit()

    def test_reservations_count_against_claims(self):
        snapshot = AllocationSnapshot.build(allowed=3, used=1, is_whitelisted=True, reserved=2)
        assert snapshot.remaining == 2
        assert not snapshot.can_claim()
        assert snapshot.claimable == 0
        # Committing one of the reserved attempts is still within the cap
        assert snapshot.can_commit()

    def test_zero_allocation(self):
        snapshot = AllocationSnapshot.build(allowed=0, used=0, is_whitelisted=False)
        assert not snapshot.can_claim()
        assert snapshot.to_dict()["remaining"] == 0

    def test_inconsistent_snapshot_rejected(self):
        with pytest.raises(ValueError):
            AllocationSnapshot(allowed=None, used=0, remaining=3, is_whitelisted=False)
        with pytest.raises(ValueError):
            AllocationSnapshot(allowed=2, used=0, remaining=3, is_whitelisted=False)

    def test_whitelist_entry_allocation_validated(self):
        with pytest.raises(ValueError):
            WhitelistEntryState(wallet_address="bc1q", allocation=-1)


class TestSupplyCounts:
    """Tests for supply counters"""

    def test_available_excludes_minted_and_held(self):
        counts = SupplyCounts(total=10, max_supply=10, minted=3, held=2)
        assert counts.available == 5
        assert not counts.sold_out

    def test_sold_out_at_cap(self):
        counts = SupplyCounts(total=10, max_supply=4, minted=4, held=0)
        assert counts.available == 0
        assert counts.sold_out

    def test_empty_collection_is_not_sold_out(self):
        assert not SupplyCounts(total=0, max_supply=0, minted=0, held=0).sold_out


class TestMintStatus:
    """Tests for the status lifecycle tables"""

    def test_linear_order(self):
        assert LINEAR_STATUSES[0] == MintStatus.PENDING
        assert LINEAR_STATUSES[-1] == MintStatus.COMPLETED
        assert status_rank(MintStatus.COMMIT_BROADCAST) < status_rank(MintStatus.COMMIT_CONFIRMED)
        assert status_rank("reveal_broadcast") < status_rank("reveal_confirmed")

    def test_side_states_have_no_rank(self):
        for status in (MintStatus.FAILED, MintStatus.STUCK, MintStatus.CANCELLED):
            assert status_rank(status) == -1

    def test_released_states_are_terminal(self):
        assert RELEASED_STATUSES < TERMINAL_STATUSES
        assert MintStatus.COMPLETED not in RELEASED_STATUSES
        assert not IN_FLIGHT_STATUSES & TERMINAL_STATUSES


class TestErrors:
    """Tests for domain error mapping"""

    def test_error_hierarchy(self):
        assert issubclass(AllocationExhaustedError, CapacityError)
        assert issubclass(NotAdminError, MintAuthorizationError)
        assert issubclass(RetryLimitExceeded, LaunchpadError)

    def test_status_codes(self):
        assert AllocationExhaustedError("x").status_code == 409
        assert NotAdminError("x").status_code == 403
        assert PhaseInactiveError("x").status_code == 400
        assert RetryLimitExceeded("x").status_code == 423

    def test_invalid_transition_message(self):
        error = InvalidTransitionError("completed", "pending", "transitions never move backward")
        assert error.from_status == "completed"
        assert error.to_status == "pending"
        assert "completed" in error.message and "pending" in error.message
        assert error.code == "invalid_transition"

    def test_code_override(self):
        assert LaunchpadError("boom", code="custom").code == "custom"
        assert LaunchpadError("boom").code == "launchpad_error"
