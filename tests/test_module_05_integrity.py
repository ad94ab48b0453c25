"""
Tests for Module 05 — QR integrity.
Fingerprint determinism and sensitivity, payload verification, tamper
detection, staleness and image rendering.
"""
import json
from datetime import date

import pytest

from common.errors import IntegrityCheckFailed, MalformedPayload
from integrity.fingerprint import BATCH, STAKEHOLDER, canonical_bytes, covered_fields, fingerprint
from integrity.payload import (
    MS_PER_DAY,
    batch_payload_for,
    build_batch_payload,
    build_stakeholder_payload,
    matches_batch,
    parse_payload,
    verify_payload,
)
from integrity.render import render_png, render_png_data_url, render_svg
from ledger.models import Batch, BatchStatus, Role

MANUFACTURER = "0x" + "1" * 40
BASE_URL = "https://pharmachain.test"
ISSUED_MS = 1_705_276_800_000  # 2024-01-15T00:00:00Z


def _amoxicillin(**overrides):
    kwargs = dict(
        batch_number="BATCH-2024-001",
        drug_name="Amoxicillin",
        manufacturer=MANUFACTURER,
        quantity=1000,
        manufacturing_date=date(2024, 1, 15),
        expiry_date=date(2026, 1, 15),
        base_url=BASE_URL,
        timestamp=ISSUED_MS,
    )
    kwargs.update(overrides)
    return build_batch_payload(**kwargs)


def _ledger_batch(**overrides):
    kwargs = dict(
        token_id=1, drug_name="Amoxicillin", batch_number="BATCH-2024-001",
        manufacturing_date=date(2024, 1, 15), expiry_date=date(2026, 1, 15),
        manufacturer=MANUFACTURER, document_ref="bafy-doc", quantity=1000,
        qr_hash="ab" * 32, status=BatchStatus.MANUFACTURED, holder=MANUFACTURER,
    )
    kwargs.update(overrides)
    return Batch(**kwargs)


class TestFingerprint:
    def test_deterministic(self):
        assert _amoxicillin().hash == _amoxicillin().hash

    def test_hash_shape(self):
        digest = _amoxicillin().hash
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_key_order_of_input_is_irrelevant(self):
        fields = _amoxicillin().fields
        reversed_fields = dict(reversed(list(fields.items())))
        assert fingerprint(fields, BATCH) == fingerprint(reversed_fields, BATCH)

    def test_canonical_bytes_follow_covered_order(self):
        decoded = json.loads(canonical_bytes(_amoxicillin().fields, BATCH))
        assert list(decoded) == list(covered_fields(BATCH))

    def test_compact_encoding(self):
        assert b" " not in canonical_bytes(_amoxicillin(drug_name="Amox").fields, BATCH)

    @pytest.mark.parametrize("name,value", [
        ("batchNumber", "BATCH-2024-002"),
        ("drugName", "Ampicillin"),
        ("manufacturer", "0x" + "2" * 40),
        ("quantity", 1001),
        ("manufacturingDate", "2024-01-16"),
        ("expiryDate", "2026-01-16"),
        ("timestamp", ISSUED_MS + 1),
        ("version", "1.1"),
        ("type", STAKEHOLDER),
    ])
    def test_every_covered_field_changes_hash(self, name, value):
        fields = dict(_amoxicillin().fields)
        original = fingerprint(fields, BATCH)
        fields[name] = value
        assert fingerprint(fields, BATCH) != original

    def test_extras_do_not_change_hash(self):
        fields = dict(_amoxicillin().fields)
        original = fingerprint(fields, BATCH)
        fields.update({"url": "https://elsewhere", "tokenId": 99, "hash": "00" * 32, "note": "x"})
        assert fingerprint(fields, BATCH) == original

    def test_missing_field_raises(self):
        fields = dict(_amoxicillin().fields)
        del fields["quantity"]
        with pytest.raises(KeyError):
            fingerprint(fields, BATCH)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            covered_fields("pallet")

    def test_non_ascii_is_stable(self):
        a = _amoxicillin(drug_name="Amoxicilina ácido")
        b = _amoxicillin(drug_name="Amoxicilina ácido")
        assert a.hash == b.hash


class TestPayloadConstruction:
    def test_url_embeds_hash(self):
        payload = _amoxicillin(base_url=BASE_URL + "/")
        assert payload.url == f"{BASE_URL}/verify/{payload.hash}"

    def test_manufacturer_lowercased(self):
        payload = _amoxicillin(manufacturer=MANUFACTURER.replace("0x", "0X"))
        assert payload.fields["manufacturer"] == MANUFACTURER.replace("0x", "0X").lower()

    def test_to_dict_carries_extras(self):
        data = _amoxicillin(token_id=7).to_dict()
        assert data["tokenId"] == 7
        assert data["hash"] == _amoxicillin().hash
        assert data["url"].endswith(data["hash"])

    def test_batch_payload_for_ledger_record(self):
        payload = batch_payload_for(_ledger_batch(), BASE_URL, timestamp=ISSUED_MS)
        assert payload.hash == _amoxicillin().hash
        assert payload.token_id == 1

    def test_stakeholder_payload(self):
        payload = build_stakeholder_payload(MANUFACTURER, "Acme Pharma", Role.MANUFACTURER, "MFG-001",
                                            BASE_URL, timestamp=ISSUED_MS)
        assert payload.fields["role"] == "Manufacturer"
        assert payload.url == f"{BASE_URL}/verify/stakeholder/{MANUFACTURER}"
        assert verify_payload(payload.to_json(), now_ms=ISSUED_MS).kind == STAKEHOLDER


class TestVerifyPayload:
    def test_valid_payload(self):
        result = verify_payload(_amoxicillin().to_json(), now_ms=ISSUED_MS + MS_PER_DAY * 3)
        assert result.is_valid
        assert result.kind == BATCH
        assert result.age_days == 3
        assert result.stale is False
        assert result.fields["quantity"] == 1000
        assert result.fingerprint == _amoxicillin().hash

    def test_accepts_dict_input(self):
        assert verify_payload(_amoxicillin().to_dict(), now_ms=ISSUED_MS).is_valid

    def test_quantity_tamper_detected(self):
        data = _amoxicillin().to_dict()
        data["quantity"] = 1001
        with pytest.raises(IntegrityCheckFailed):
            verify_payload(json.dumps(data))

    def test_hash_tamper_detected(self):
        data = _amoxicillin().to_dict()
        data["hash"] = "0" * 64
        with pytest.raises(IntegrityCheckFailed):
            verify_payload(data)

    def test_extra_edits_do_not_invalidate(self):
        data = _amoxicillin(token_id=1).to_dict()
        data["url"] = "https://mirror.example/verify"
        data["tokenId"] = 2
        result = verify_payload(data, now_ms=ISSUED_MS)
        assert result.is_valid
        assert result.token_id == 2

    def test_non_strict_reports_reason(self):
        data = _amoxicillin().to_dict()
        data["quantity"] = 1001
        result = verify_payload(data, strict=False)
        assert result.is_valid is False
        assert result.reason == "INTEGRITY_CHECK_FAILED"

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2, 3]",
        "42",
        b"\xff\xfe",
        json.dumps({"type": "pallet"}),
    ])
    def test_malformed_inputs(self, raw):
        with pytest.raises(MalformedPayload):
            verify_payload(raw)

    @pytest.mark.parametrize("name", list(covered_fields(BATCH)) + ["hash"])
    def test_missing_field_is_malformed(self, name):
        data = _amoxicillin().to_dict()
        del data[name]
        with pytest.raises(MalformedPayload):
            verify_payload(data)

    @pytest.mark.parametrize("name,value", [
        ("quantity", "1000"),
        ("quantity", True),
        ("timestamp", 1.5),
        ("drugName", 7),
        ("hash", "XYZ"),
    ])
    def test_wrong_types_are_malformed(self, name, value):
        data = _amoxicillin().to_dict()
        data[name] = value
        with pytest.raises(MalformedPayload):
            verify_payload(data)

    def test_unsupported_version(self):
        payload = _amoxicillin()
        fields = dict(payload.fields, version="2.0")
        data = dict(fields, hash=fingerprint(fields, BATCH))
        with pytest.raises(MalformedPayload):
            verify_payload(data)

    def test_stale_payload_still_valid(self):
        result = verify_payload(_amoxicillin().to_json(), max_age_days=365,
                                now_ms=ISSUED_MS + MS_PER_DAY * 400)
        assert result.is_valid
        assert result.stale is True
        assert result.age_days == 400

    def test_future_timestamp_has_zero_age(self):
        result = verify_payload(_amoxicillin().to_json(), now_ms=ISSUED_MS - MS_PER_DAY)
        assert result.age_days == 0

    def test_bool_token_id_ignored(self):
        data = _amoxicillin().to_dict()
        data["tokenId"] = True
        assert verify_payload(data, now_ms=ISSUED_MS).token_id is None

    def test_parse_payload_passes_mappings_through(self):
        assert parse_payload({"a": 1}) == {"a": 1}


class TestMatchesBatch:
    def test_matching_record(self):
        v = verify_payload(_amoxicillin().to_dict(), now_ms=ISSUED_MS)
        assert matches_batch(v, _ledger_batch())

    def test_record_differs(self):
        v = verify_payload(_amoxicillin().to_dict(), now_ms=ISSUED_MS)
        assert not matches_batch(v, _ledger_batch(quantity=999))
        assert not matches_batch(v, _ledger_batch(expiry_date=date(2027, 1, 1)))

    def test_stakeholder_payload_never_matches(self):
        payload = build_stakeholder_payload(MANUFACTURER, "Acme", "Manufacturer", "MFG-001",
                                            BASE_URL, timestamp=ISSUED_MS)
        v = verify_payload(payload.to_dict(), now_ms=ISSUED_MS)
        assert not matches_batch(v, _ledger_batch())


class TestRender:
    def test_png(self):
        png = render_png(_amoxicillin())
        assert png.startswith(b"\x89PNG")

    def test_data_url(self):
        assert render_png_data_url(_amoxicillin()).startswith("data:image/png;base64,")

    def test_svg(self):
        svg = render_svg(_amoxicillin())
        assert "<svg" in svg


if __name__ == "__main__":
    import subprocess, sys
    sys.exit(subprocess.call(["pytest", __file__, "-v"]))
