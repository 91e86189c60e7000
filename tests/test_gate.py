from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fakes import FakeClient, compliance_record

from sddc_cli.core.exceptions import ComplianceStoreError
from sddc_cli.core.gate import ComplianceGate, ComplianceStore, DenyReason
from sddc_cli.core.models import TargetInfo, TargetRef

CL01 = TargetRef(cluster_id="cl01", domain_id="wld-01")
CL02 = TargetRef(cluster_id="cl02", domain_id="wld-01")
EVALUATED = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _store(tmp_path: Path) -> ComplianceStore:
    return ComplianceStore(tmp_path / "state" / "compliance.json")


def test_store_round_trip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    record = compliance_record(CL01)
    store.put(record)

    reloaded = _store(tmp_path)
    assert reloaded.get(CL01) == record
    assert reloaded.get(CL02) is None
    assert reloaded.records() == [record]


def test_store_keeps_latest_record_per_target(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.put(compliance_record(CL01, "img-1"))
    store.put(compliance_record(CL01, "img-2"))
    store.put(compliance_record(CL02, "img-1"))

    reloaded = _store(tmp_path)
    record = reloaded.get(CL01)
    assert record is not None
    assert record.image_ref == "img-2"
    assert len(reloaded.records()) == 2


def test_store_rejects_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "compliance.json"
    path.write_text("{not json")
    with pytest.raises(ComplianceStoreError):
        ComplianceStore(path).get(CL01)


def test_missing_store_file_reads_as_empty(tmp_path: Path) -> None:
    assert _store(tmp_path).records() == []


@pytest.mark.asyncio
async def test_gate_allows_with_evaluated_image(client: FakeClient, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.put(compliance_record(CL01, "img-1"))
    gate = ComplianceGate(client, store)

    decision = await gate.check(CL01)

    assert decision.allowed
    assert decision.image_ref == "img-1"
    assert decision.reason is None


@pytest.mark.asyncio
async def test_gate_denies_without_record(client: FakeClient, tmp_path: Path) -> None:
    gate = ComplianceGate(client, _store(tmp_path))

    decision = await gate.check(CL02)

    assert not decision.allowed
    assert decision.reason is DenyReason.NO_RECORD
    assert client.call_names("image_exists") == []


@pytest.mark.asyncio
async def test_gate_denies_when_image_was_removed(client: FakeClient, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.put(compliance_record(CL01, "img-gone"))
    gate = ComplianceGate(client, store)

    decision = await gate.check(CL01)

    assert decision.reason is DenyReason.IMAGE_MISSING
    assert decision.image_ref is None


@pytest.mark.asyncio
async def test_gate_denies_already_transitioned_target(client: FakeClient, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.put(compliance_record(CL01))
    client.targets[CL01] = TargetInfo(ref=CL01, image_ref="img-1", transitioned=True)
    gate = ComplianceGate(client, store)

    decision = await gate.check(CL01)

    assert decision.reason is DenyReason.TARGET_ALREADY_TRANSITIONED


@pytest.mark.asyncio
async def test_gate_uses_supplied_target_info(client: FakeClient, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.put(compliance_record(CL01))
    gate = ComplianceGate(client, store)

    decision = await gate.check(CL01, target=TargetInfo(ref=CL01))

    assert decision.allowed
    assert client.call_names("get_target") == []


@pytest.mark.asyncio
async def test_gate_denies_stale_record_only_when_age_limit_set(client: FakeClient, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.put(compliance_record(CL01, evaluated_at=EVALUATED))
    later = EVALUATED + timedelta(hours=2)

    unlimited = ComplianceGate(client, store, now=lambda: later)
    assert (await unlimited.check(CL01)).allowed

    limited = ComplianceGate(client, store, max_record_age=3600, now=lambda: later)
    decision = await limited.check(CL01)
    assert decision.reason is DenyReason.STALE_RECORD
