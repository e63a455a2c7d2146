"""
Tests for the hash-chained audit trail
"""

from decimal import Decimal

from portfolio_staking.storage import InMemoryStorage
from portfolio_staking.audit import AuditTrail, AuditEventType


class TestAuditTrail:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def log(self, entity_id="p1", **metadata):
        return self.audit.log_event(
            event_type=AuditEventType.PRINCIPAL_CREDITED,
            entity_type="portfolio",
            entity_id=entity_id,
            metadata=metadata,
            user_id="admin1"
        )

    def test_events_are_chained(self):
        first = self.log(amount=Decimal('10'))
        second = self.log(amount=Decimal('20'))

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert first.verify_hash()
        assert second.verify_hash()
        assert self.audit.count_events() == 2

    def test_metadata_is_stored_in_json_form(self):
        event = self.log(amount=Decimal('10.5'))
        assert event.metadata == {"amount": "10.5"}

    def test_verify_integrity_clean_chain(self):
        for i in range(5):
            self.log(amount=Decimal(i))

        result = self.audit.verify_integrity()

        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampered_metadata_detected(self):
        self.log(amount=Decimal('10'))
        target = self.log(amount=Decimal('20'))
        self.log(amount=Decimal('30'))

        record = self.storage.load("audit_events", target.id)
        record["metadata"]["amount"] = "2000"
        self.storage.save("audit_events", target.id, record)

        result = self.audit.verify_integrity()

        assert not result["valid"]
        assert [e["event_id"] for e in result["hash_errors"]] == [target.id]

    def test_deleted_event_breaks_chain(self):
        self.log(amount=Decimal('1'))
        middle = self.log(amount=Decimal('2'))
        last = self.log(amount=Decimal('3'))

        self.storage.delete("audit_events", middle.id)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert [e["event_id"] for e in result["chain_breaks"]] == [last.id]

    def test_queries(self):
        self.log("p1")
        self.log("p2")
        self.audit.log_event(AuditEventType.RATE_APPLIED, "portfolio", "p1")

        p1_events = self.audit.get_events_for_entity("portfolio", "p1")
        assert [e.event_type for e in p1_events] == [
            AuditEventType.PRINCIPAL_CREDITED, AuditEventType.RATE_APPLIED
        ]
        assert len(self.audit.get_events_for_entity("portfolio", "p1", limit=1)) == 1
        assert len(self.audit.get_events_by_type(AuditEventType.RATE_APPLIED)) == 1

    def test_event_rolled_back_with_unit_of_work(self):
        try:
            with self.storage.atomic():
                self.log(amount=Decimal('1'))
                raise RuntimeError("abort")
        except RuntimeError:
            pass

        assert self.audit.count_events() == 0

    def test_last_hash_served_without_rescanning(self):
        first = self.log(amount=Decimal('1'))
        scans = []
        load_all = self.storage.load_all

        def counting_load_all(table):
            scans.append(table)
            return load_all(table)

        self.storage.load_all = counting_load_all
        second = self.log(amount=Decimal('2'))
        third = self.log(amount=Decimal('3'))

        assert scans == []
        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash

    def test_chain_continues_after_rolled_back_event(self):
        first = self.log(amount=Decimal('1'))
        try:
            with self.storage.atomic():
                self.log(amount=Decimal('2'))
                raise RuntimeError("abort")
        except RuntimeError:
            pass

        third = self.log(amount=Decimal('3'))

        assert third.previous_hash == first.current_hash
        assert self.audit.verify_integrity()["valid"]

    def test_trails_sharing_storage_stay_chained(self):
        other = AuditTrail(self.storage)
        first = self.log(amount=Decimal('1'))
        second = other.log_event(AuditEventType.RATE_APPLIED, "portfolio", "p1")
        third = self.log(amount=Decimal('3'))

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash
        assert self.audit.verify_integrity()["valid"]
