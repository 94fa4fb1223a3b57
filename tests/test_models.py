from __future__ import annotations

import pytest

from agent_link.db import RawRecord
from agent_link.log_client import decode_raw_records
from agent_link.models import (
    MalformedRecordError,
    Operation,
    decode_record,
    encode_payload,
    split_operator_id,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("0.0.111@0.0.222", ("0.0.111", "0.0.222")),
        ("0.0.111", ("0.0.111", None)),
        ("@0.0.222", (None, "0.0.222")),
        ("0.0.111@", ("0.0.111", None)),
        ("", (None, None)),
    ],
)
def test_split_operator_id(value, expected):
    assert split_operator_id(value) == expected


def test_encode_payload_uses_wire_field_names():
    payload = encode_payload(
        operation=Operation.CONNECTION_CREATED,
        sender="0.0.100@0.0.222",
        connection_id=5,
        connection_topic_id="0.0.600",
        memo="hello",
    )

    assert payload == {
        "p": "hcs-10",
        "op": "connection_created",
        "operator_id": "0.0.100@0.0.222",
        "data": "",
        "connection_id": 5,
        "connection_topic_id": "0.0.600",
        "m": "hello",
    }


def test_decode_record_exposes_sender_parts():
    record = decode_record(
        topic_id="0.0.100",
        seq=5,
        created_at=1.0,
        payload={"p": "hcs-10", "op": "connection_request", "operator_id": "0.0.111@0.0.222"},
    )

    assert record.operation == Operation.CONNECTION_REQUEST
    assert record.account_id == "0.0.222"
    assert record.sender_topic_id == "0.0.111"
    assert record.payload == ""


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"op": "register"},
        {"op": "message", "operator_id": 7},
        {"op": "connection_created", "connection_id": "5"},
        {"op": "connection_created", "connection_id": True},
        {"op": "connection_created", "connection_topic_id": 600},
    ],
)
def test_decode_record_rejects_malformed(payload):
    with pytest.raises(MalformedRecordError):
        decode_record(topic_id="0.0.100", seq=1, created_at=1.0, payload=payload)


def test_decode_raw_records_skips_bad_rows(caplog):
    rows = [
        RawRecord(topic_id="0.0.100", seq=1, created_at=1.0, payload_json="{not json"),
        RawRecord(topic_id="0.0.100", seq=2, created_at=2.0, payload_json='{"op":"bogus"}'),
        RawRecord(
            topic_id="0.0.100",
            seq=3,
            created_at=3.0,
            payload_json='{"op":"message","operator_id":"0.0.1@0.0.2","data":"ok"}',
        ),
    ]

    records = decode_raw_records(rows)

    assert [r.seq for r in records] == [3]
    assert records[0].payload == "ok"
    assert "Discarding malformed record #1" in caplog.text
