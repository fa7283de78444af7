"""
Tests for the ledger store and LedgerRepository.

1. Conditional writes on the in-memory store
2. Status transitions go through the state machine
3. Code claims: one code per order, one redemption per account
4. Admin deletions cascade to codes and claims
5. Statistics and user summaries
"""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_code, make_order, run
from schemas.ledger_models import InvalidTransitionError, OrderStatus
from storage.ledger_store import (
    ACCESS_CODES,
    ACCOUNT_REDEMPTIONS,
    ORDER_CODE_CLAIMS,
    ORDERS,
    InMemoryLedgerStore,
)


# =============================================================================
# TEST: STORE
# =============================================================================

class TestInMemoryStore:

    def test_put_if_absent_only_once(self):
        store = InMemoryLedgerStore()
        assert run(store.put_if_absent("c", "k", {"v": 1})) is True
        assert run(store.put_if_absent("c", "k", {"v": 2})) is False
        assert run(store.get("c", "k")) == {"v": 1}

    def test_compare_and_patch(self):
        store = InMemoryLedgerStore()
        run(store.put("c", "k", {"used": False, "n": 1}))
        assert run(store.compare_and_patch("c", "k", {"used": False}, {"used": True})) is True
        assert run(store.compare_and_patch("c", "k", {"used": False}, {"used": True})) is False
        assert run(store.get("c", "k")) == {"used": True, "n": 1}

    def test_compare_and_patch_unless_guard(self):
        store = InMemoryLedgerStore()
        run(store.put("c", "legacy", {"n": 1}))
        run(store.put("c", "done", {"used": True}))

        assert run(store.compare_and_patch("c", "legacy", {}, {"used": True}, unless={"used": True})) is True
        assert run(store.compare_and_patch("c", "legacy", {}, {"used": True}, unless={"used": True})) is False
        assert run(store.compare_and_patch("c", "done", {}, {"n": 2}, unless={"used": True})) is False
        assert run(store.compare_and_patch("c", "missing", {}, {"used": True}, unless={"used": True})) is False
        assert run(store.get("c", "missing")) is None

    def test_patch_merges_and_upserts(self):
        store = InMemoryLedgerStore()
        run(store.patch("c", "k", {"a": 1}))
        run(store.patch("c", "k", {"b": 2}))
        assert run(store.get("c", "k")) == {"a": 1, "b": 2}

    def test_find_matches_legacy_spelling(self):
        store = InMemoryLedgerStore()
        run(store.put(ACCESS_CODES, "OLD", {"code": "OLD", "orderId": "order_9"}))
        found = run(store.find_one_by(ACCESS_CODES, "order_id", "order_9"))
        assert found["code"] == "OLD"

    def test_increment_starts_at_zero(self):
        store = InMemoryLedgerStore()
        assert run(store.increment("c", "k", "n")) == 1
        assert run(store.increment("c", "k", "n", 2)) == 3

    def test_increment_without_create(self):
        store = InMemoryLedgerStore()
        assert run(store.increment("c", "gone", "n", create=False)) is None
        assert run(store.get("c", "gone")) is None

        run(store.put("c", "k", {"n": 4}))
        assert run(store.increment("c", "k", "n", create=False)) == 5

    def test_reads_are_copies(self):
        store = InMemoryLedgerStore()
        run(store.put("c", "k", {"items": [1]}))
        run(store.get("c", "k"))["items"].append(2)
        assert run(store.get("c", "k")) == {"items": [1]}


# =============================================================================
# TEST: ORDERS
# =============================================================================

class TestOrders:

    def test_create_sets_timestamps(self, repository):
        order = run(repository.create_order(make_order()))
        stored = run(repository.get_order(order.order_id))
        assert stored.created_at is not None
        assert stored.status == OrderStatus.PENDING

    def test_transition_rejects_illegal_move(self, repository):
        run(repository.create_order(make_order()))
        run(repository.transition_order("order_1", OrderStatus.SUCCESS))
        with pytest.raises(InvalidTransitionError):
            run(repository.transition_order("order_1", OrderStatus.PENDING))
        assert run(repository.get_order("order_1")).status == OrderStatus.SUCCESS

    def test_transition_unknown_order(self, repository):
        with pytest.raises(LookupError):
            run(repository.transition_order("missing", OrderStatus.SUCCESS))

    def test_update_order_refuses_status(self, repository):
        run(repository.create_order(make_order()))
        with pytest.raises(ValueError):
            run(repository.update_order("order_1", {"status": "SUCCESS"}))

    def test_lookup_by_request_id_and_email(self, repository):
        run(repository.create_order(make_order(request_id="REQ42")))
        assert run(repository.get_order_by_payment_request_id("REQ42")).order_id == "order_1"
        assert run(repository.get_latest_order_by_email(" BUYER@example.com")).order_id == "order_1"

    def test_email_counter_for_deleted_order(self, repository):
        run(repository.create_order(make_order()))
        assert run(repository.increment_code_emails("order_1")) == 1

        run(repository.delete_order("order_1"))
        assert run(repository.increment_code_emails("order_1")) is None
        assert run(repository.list_orders()) == []

    def test_listing_skips_unreadable_records(self, repository, store):
        run(repository.create_order(make_order()))
        run(store.put(ORDERS, "broken", {"code_emails_sent": 1}))
        run(store.put(ACCESS_CODES, "BROKEN", {"used": True}))

        assert [o.order_id for o in run(repository.list_orders())] == ["order_1"]
        assert run(repository.list_access_codes()) == []
        assert run(repository.get_statistics())["totalOrders"] == 1
        assert run(repository.get_user_summaries())[0]["totalOrders"] == 1

    def test_stale_pending_orders(self, repository, store):
        run(repository.create_order(make_order("old")))
        run(repository.create_order(make_order("paid")))
        run(repository.transition_order("paid", OrderStatus.SUCCESS))

        later = datetime.now(timezone.utc) + timedelta(hours=1)
        stale = run(repository.find_stale_pending_orders(later))
        assert [o.order_id for o in stale] == ["old"]


# =============================================================================
# TEST: CLAIMS
# =============================================================================

class TestClaims:

    def test_first_code_claim_wins(self, repository):
        assert run(repository.claim_order_code("order_1", "AAAAAAAAAAAA")) == "AAAAAAAAAAAA"
        assert run(repository.claim_order_code("order_1", "BBBBBBBBBBBB")) == "AAAAAAAAAAAA"

    def test_mark_code_used_is_single_shot(self, repository):
        run(repository.create_access_code(make_code()))
        assert run(repository.mark_code_used("ABCDEFGH1234", "buyer@example.com", "acct")) is True
        assert run(repository.mark_code_used("ABCDEFGH1234", "buyer@example.com", "acct")) is False

        stored = run(repository.get_access_code("ABCDEFGH1234"))
        assert stored.used is True
        assert stored.used_by_account == "acct"

    def test_create_access_code_refuses_duplicate(self, repository):
        assert run(repository.create_access_code(make_code())) is True
        assert run(repository.create_access_code(make_code(email="other@example.com"))) is False

    def test_account_redemption_claim(self, repository):
        assert run(repository.claim_account_redemption("acct", "A")) is True
        assert run(repository.claim_account_redemption("acct", "B")) is False
        assert run(repository.has_account_used_code("acct")) is True

        run(repository.release_account_redemption("acct", "B"))
        assert run(repository.has_account_used_code("acct")) is True
        run(repository.release_account_redemption("acct", "A"))
        assert run(repository.has_account_used_code("acct")) is False


# =============================================================================
# TEST: DELETIONS
# =============================================================================

class TestDeletions:

    def _seed(self, repository):
        run(repository.create_order(make_order()))
        run(repository.claim_order_code("order_1", "ABCDEFGH1234"))
        run(repository.create_access_code(make_code(order_id="order_1")))
        run(repository.claim_account_redemption("acct", "ABCDEFGH1234"))
        run(repository.mark_code_used("ABCDEFGH1234", "buyer@example.com", "acct"))

    def test_delete_order_cascades(self, repository, store):
        self._seed(repository)
        assert run(repository.delete_order("order_1")) is True

        assert run(store.get(ORDERS, "order_1")) is None
        assert run(store.get(ACCESS_CODES, "ABCDEFGH1234")) is None
        assert run(store.get(ORDER_CODE_CLAIMS, "order_1")) is None
        assert run(store.get(ACCOUNT_REDEMPTIONS, "acct")) is None

    def test_delete_unknown_order(self, repository):
        assert run(repository.delete_order("nope")) is False

    def test_delete_user_by_email(self, repository):
        self._seed(repository)
        run(repository.create_order(make_order("order_2", email="other@example.com")))

        result = run(repository.delete_user_by_email("Buyer@Example.com"))
        assert result == {"deleted": True, "deleted_orders": 1, "deleted_codes": 1}
        assert run(repository.get_order("order_2")) is not None

    def test_delete_unknown_user(self, repository):
        assert run(repository.delete_user_by_email("ghost@example.com"))["deleted"] is False


# =============================================================================
# TEST: REPORTING
# =============================================================================

class TestReporting:

    def test_statistics(self, repository):
        run(repository.create_order(make_order("a")))
        run(repository.create_order(make_order("b", services=("ring",))))
        run(repository.create_order(make_order("c", email="other@example.com")))
        run(repository.transition_order("a", OrderStatus.SUCCESS))
        run(repository.transition_order("b", OrderStatus.SUCCESS))
        run(repository.transition_order("c", OrderStatus.EXPIRED))
        run(repository.create_access_code(make_code("CODE00000001")))
        run(repository.create_access_code(make_code("CODE00000002", used=True)))

        stats = run(repository.get_statistics())
        assert stats["totalOrders"] == 3
        assert stats["successfulOrders"] == 2
        assert stats["expiredOrders"] == 1
        assert stats["pendingOrders"] == 0
        assert stats["totalRevenue"] == 30.0
        assert stats["uniqueUsers"] == 2
        assert stats["usedCodes"] == 1
        assert stats["unusedCodes"] == 1

    def test_user_summaries(self, repository):
        run(repository.create_order(make_order("a")))
        run(repository.create_order(make_order("b", services=("ring",))))
        run(repository.transition_order("a", OrderStatus.SUCCESS))

        users = run(repository.get_user_summaries())
        assert len(users) == 1
        assert users[0]["email"] == "buyer@example.com"
        assert users[0]["totalOrders"] == 2
        assert users[0]["successfulOrders"] == 1
        assert users[0]["totalSpent"] == 20.0

    def test_events_filtered_by_severity(self, repository):
        run(repository.log_event("A", {"x": 1}))
        run(repository.log_event("B", {"x": 2}, severity="CRITICAL"))
        critical = run(repository.recent_events(severity="CRITICAL"))
        assert [e["event_type"] for e in critical] == ["B"]
        assert len(run(repository.recent_events())) == 2

    def test_bundles_and_topics(self, repository):
        run(repository.save_bundle("b1", "Village"))
        run(repository.save_topic("b1", "t1", "North", "village_north", subscribers=4))
        bundles = run(repository.list_bundles())
        assert bundles[0]["topicsCount"] == 1
        assert bundles[0]["topics"][0]["fcmTopicName"] == "village_north"

        assert run(repository.delete_topic("b1", "t1")) is True
        assert run(repository.delete_bundle("b1")) is True
        assert run(repository.delete_bundle("b1")) is False
