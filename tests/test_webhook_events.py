from __future__ import annotations

import pytest

from ci_monitor.alerting.events import InvalidWebhookPayload, is_pipeline_event, parse_pipeline_event


def test_parse_pipeline_event(pipeline_payload):
    payload = pipeline_payload(status="FAILED")
    event = parse_pipeline_event(payload)

    assert event.project_id == 42
    assert event.pipeline_id == 1001
    assert event.status == "failed"
    assert event.project_name == "api"
    assert event.ref == "main"
    assert event.duration == 245
    assert event.user_name == "Dana Ops"
    assert event.web_url.endswith("/-/pipelines/1001")


def test_missing_user_defaults_to_unknown(pipeline_payload):
    payload = pipeline_payload()
    del payload["user"]
    assert parse_pipeline_event(payload).user_name == "Unknown"


def test_is_pipeline_event_checks_object_kind(pipeline_payload):
    assert is_pipeline_event(pipeline_payload())
    assert not is_pipeline_event({"object_kind": "push"})
    assert not is_pipeline_event(["pipeline"])


@pytest.mark.parametrize(
    "mutate",
    [
        lambda p: p.pop("project"),
        lambda p: p.pop("object_attributes"),
        lambda p: p["object_attributes"].pop("status"),
        lambda p: p["object_attributes"].update(id="abc"),
        lambda p: p["project"].update(id=None),
    ],
)
def test_invalid_pipeline_payloads_raise(pipeline_payload, mutate):
    payload = pipeline_payload()
    mutate(payload)
    with pytest.raises(InvalidWebhookPayload):
        parse_pipeline_event(payload)
