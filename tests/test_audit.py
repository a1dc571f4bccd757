import pytest

from tag_custody.errors import InvalidTransitionError, NotFoundError
from tag_custody.models.inventory_unit import UnitStatus
from tag_custody.schemas.inventory import (
    AuditEntryOut,
    EvidenceFile,
    InstallRequest,
    QuarantineRequest,
    ReserveRequest,
    RMARequest,
    TestResults,
    UnitOut,
)
from tag_custody.schemas.transfer import TransferComplete, TransferCreate
from tag_custody.services import audit_service, quarantine_service, reservation_service, transfer_service
from tag_custody.services.stock_service import get_unit, list_units


class TestUnitHistory:
    def test_entries_in_commit_order(self, db, bus, receive):
        uid = receive(quantity=1)[0]
        reservation_service.reserve_unit(db, bus, ReserveRequest(shipment_id="S1", hub_id="H1", uid=uid))
        reservation_service.release_unit(db, bus, uid)
        reservation_service.reserve_unit(db, bus, ReserveRequest(shipment_id="S2", hub_id="H1", uid=uid))

        history = audit_service.unit_history(db, uid)

        assert [(e.action, e.old_value, e.new_value) for e in history] == [
            ("receive", None, "available"),
            ("assign", "available", "assigned"),
            ("release", "assigned", "available"),
            ("assign", "available", "assigned"),
        ]
        assert [e.id for e in history] == sorted(e.id for e in history)

    def test_details_round_trip_through_schema(self, db, bus, receive):
        uid = receive(quantity=1)[0]
        reservation_service.reserve_unit(db, bus, ReserveRequest(shipment_id="S5", hub_id="H1", uid=uid))

        out = AuditEntryOut.model_validate(audit_service.unit_history(db, uid)[-1])

        assert out.details == {"shipment_id": "S5", "hub_id": "H1"}
        assert out.entity_table == "inventory_units"

    def test_unknown_unit(self, db):
        with pytest.raises(NotFoundError):
            audit_service.unit_history(db, "NOPE")


class TestReplayStatus:
    def test_replay_matches_every_unit(self, db, bus, receive):
        a, b, c, d, e = receive(quantity=5)
        reservation_service.reserve_unit(db, bus, ReserveRequest(shipment_id="S1", hub_id="H1", uid=a))
        reservation_service.install_unit(db, bus, InstallRequest(uid=a, hub_id="H1"))
        reservation_service.mark_rma(db, bus, RMARequest(uid=a, reason_code="FIELD_FAIL"))
        reservation_service.record_test_results(db, bus, b, TestResults(read_passed=True, write_passed=False))
        reservation_service.mark_defective(db, bus, c, "Scratched")
        transfer = transfer_service.initiate_transfer(
            db, bus, TransferCreate(from_hub_id="H1", to_hub_id="H2", uids=[d])
        )
        transfer_service.complete_transfer(
            db, bus, TransferComplete(transfer_id=transfer.id, to_hub_id="H2", arrived_uids=[d])
        )
        quarantine_service.quarantine_lot(db, bus, QuarantineRequest(lot="L100", hub_id="H1", reason="Recall"))
        quarantine_service.lift_quarantine(db, bus, QuarantineRequest(lot="L100", hub_id="H1", reason="Cleared"))

        for uid in (a, b, c, d, e):
            assert audit_service.replay_status(db, uid) == get_unit(db, uid).status.value

    def test_broken_chain_is_detected(self, db, bus, receive):
        uid = receive(quantity=1)[0]
        audit_service.record_transition(
            db, uid, action="assign", old_value="installed", new_value="rma", actor_id="tamper"
        )
        db.commit()

        with pytest.raises(ValueError):
            audit_service.replay_status(db, uid)


class TestEndToEnd:
    def test_receive_reserve_install_quarantine_lift(self, db, bus, receive):
        uids = receive(hub_id="H1", lot="L100", quantity=3)
        assert all(get_unit(db, uid).status == UnitStatus.AVAILABLE for uid in uids)

        unit = reservation_service.reserve_unit(db, bus, ReserveRequest(shipment_id="S1", hub_id="H1"))
        assert unit.status == UnitStatus.ASSIGNED
        installed = reservation_service.install_unit(db, bus, InstallRequest(uid=unit.uid, hub_id="H1"))
        assert installed.status == UnitStatus.INSTALLED

        result = quarantine_service.quarantine_lot(
            db, bus, QuarantineRequest(lot="L100", hub_id="H1", reason="Supplier defect notice")
        )
        remaining = [uid for uid in uids if uid != unit.uid]
        assert sorted(result.affected_uids) == sorted(remaining)
        assert get_unit(db, unit.uid).status == UnitStatus.INSTALLED
        assert {u.uid for u in list_units(db, status="quarantined")} == set(remaining)

        lifted = quarantine_service.lift_quarantine(db, bus, QuarantineRequest(lot="L100", reason="Cleared"))
        assert sorted(lifted.restored_uids) == sorted(remaining)
        states = {UnitOut.model_validate(get_unit(db, uid)).status for uid in remaining}
        assert states == {UnitStatus.AVAILABLE}
        assert get_unit(db, unit.uid).status == UnitStatus.INSTALLED


class TestEvidence:
    def test_receipt_evidence_is_linked_to_each_entry(self, db, receive):
        delivery_note = EvidenceFile(name="delivery-note.pdf", path="s3://evidence/L100/delivery-note.pdf")
        uids = receive(quantity=2, evidence=[delivery_note])

        for uid in uids:
            (entry,) = audit_service.unit_history(db, uid)
            (evidence,) = entry.evidence
            assert evidence.file_name == "delivery-note.pdf"
            assert evidence.file_type == "document"
            assert evidence.uploaded_by == "intake-1"

    def test_install_and_rma_evidence(self, db, bus, receive, events):
        uid = receive(quantity=1)[0]
        reservation_service.reserve_unit(db, bus, ReserveRequest(shipment_id="S1", hub_id="H1", uid=uid))
        photo = EvidenceFile(name="tag-on-box.jpg", path="/evidence/S1/tag-on-box.jpg", type="photo", uploaded_by="tech-4")
        reservation_service.install_unit(db, bus, InstallRequest(uid=uid, hub_id="H1", evidence=[photo]))
        report = EvidenceFile(name="field-read.csv", path="/evidence/S1/field-read.csv")
        reservation_service.mark_rma(
            db, bus, RMARequest(uid=uid, reason_code="FIELD_FAIL", evidence=[report]), actor_id="qa-2"
        )

        files = audit_service.unit_evidence(db, uid)
        assert [(f.file_name, f.file_type, f.uploaded_by) for f in files] == [
            ("tag-on-box.jpg", "photo", "tech-4"),
            ("field-read.csv", "document", "qa-2"),
        ]
        install_entry = [e for e in audit_service.unit_history(db, uid) if e.action == "install"][0]
        out = AuditEntryOut.model_validate(install_entry)
        assert [e.file_path for e in out.evidence] == ["/evidence/S1/tag-on-box.jpg"]
        assert events[-1].data["evidence"] == ["field-read.csv"]

    def test_failed_operation_stores_no_evidence(self, db, bus, receive):
        uid = receive(quantity=1)[0]
        photo = EvidenceFile(name="x.jpg", path="/x.jpg")
        with pytest.raises(InvalidTransitionError):
            reservation_service.install_unit(db, bus, InstallRequest(uid=uid, hub_id="H1", evidence=[photo]))
        assert audit_service.unit_evidence(db, uid) == []
