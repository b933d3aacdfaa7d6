import structlog

from ai_failover.logging import configure_logging, redact_text, redaction_processor


def test_redact_text_masks_known_secrets_and_vendor_key_shapes():
    text = "key=sk-ant-abcdef1234567890 google=AIzaSyA1234567890abcdefghijk auth=Bearer abc.def.ghi custom=hunter2hunter2"
    out = redact_text(text, secrets=["hunter2hunter2"])
    assert "sk-ant-abcdef1234567890" not in out
    assert "AIzaSyA1234567890abcdefghijk" not in out
    assert "abc.def.ghi" not in out
    assert "hunter2hunter2" not in out
    assert out.count("[REDACTED]") >= 3


def test_redaction_processor_masks_sensitive_keys_recursively():
    processor = redaction_processor(["tenant-secret"])
    event = processor(
        None,
        "info",
        {
            "event": "upstream_request",
            "headers": {"x-api-key": "anything", "content-type": "application/json"},
            "detail": ["leaked tenant-secret here"],
            "provider": "anthropic",
        },
    )
    assert event["headers"]["x-api-key"] == "[REDACTED]"
    assert event["headers"]["content-type"] == "application/json"
    assert event["detail"] == ["leaked [REDACTED] here"]
    assert event["provider"] == "anthropic"


def test_configured_logger_never_renders_secrets(capsys):
    configure_logging(level="INFO", fmt="json", secrets=["sk-openai-live-0000000000"])
    structlog.get_logger().info("failover_attempt", error="401 for key sk-openai-live-0000000000")
    captured = capsys.readouterr()
    assert "failover_attempt" in captured.out
    assert "sk-openai-live-0000000000" not in captured.out + captured.err
    structlog.reset_defaults()
