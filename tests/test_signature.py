import pytest

from aecoin_store.services.signature import (
    SignatureCheck,
    SignatureVerifier,
    build_source_string,
    compute_signature,
    parse_redirect_query,
)
from aecoin_store.utils.errors import ConfigurationError, SignatureError

KEY = "s3cr3t"
GOLDEN_CALLBACK = "2913d46518d66a621c8359529d34d882cc821f0f26df5bc63fe8cba85c5f053b"
GOLDEN_REDIRECT = "0e911bfc30839cbcdbba6ed00ca88381a9f72c76768eaeebf689f3475a32eed8"


def signed(fields: dict, prefix: str = "") -> dict:
    return {**fields, "x_signature": compute_signature(fields, KEY, prefix=prefix)}


class TestSourceString:
    def test_sorted_case_insensitively_and_pipe_joined(self) -> None:
        fields = {"paid": "true", "Amount": "5000", "id": "abc123", "x_signature": "ignored"}
        assert build_source_string(fields) == "Amount5000|idabc123|paidtrue"

    def test_missing_value_becomes_empty(self) -> None:
        assert build_source_string({"mobile": None, "id": "abc"}) == "idabc|mobile"

    def test_prefix_applied_to_every_key(self) -> None:
        fields = {"paid": "true", "id": "abc123"}
        assert build_source_string(fields, prefix="billplz") == "billplzidabc123|billplzpaidtrue"


class TestComputeSignature:
    def test_golden_callback_value(self) -> None:
        fields = {"id": "abc123", "paid": "true", "amount": "5000"}
        assert compute_signature(fields, KEY) == GOLDEN_CALLBACK

    def test_golden_redirect_value(self) -> None:
        fields = {"id": "abc123", "paid": "true", "paid_at": "2026-10-19 10:00:00 +0800"}
        assert compute_signature(fields, KEY, prefix="billplz") == GOLDEN_REDIRECT

    def test_independent_of_input_order(self) -> None:
        forward = {"id": "abc123", "paid": "true", "amount": "5000", "state": "paid"}
        backward = dict(reversed(list(forward.items())))
        assert compute_signature(forward, KEY) == compute_signature(backward, KEY)

    def test_deterministic(self) -> None:
        fields = {"id": "abc123", "paid": "true"}
        assert compute_signature(fields, KEY) == compute_signature(dict(fields), KEY)


class TestVerifier:
    def test_valid_callback_is_verified(self) -> None:
        verifier = SignatureVerifier(signature_key=KEY, allow_bypass=False, environment="test")
        fields = signed({"id": "abc123", "paid": "true", "amount": "5000"})
        assert fields["x_signature"] == GOLDEN_CALLBACK
        assert verifier.verify_callback(fields) is SignatureCheck.VERIFIED

    @pytest.mark.parametrize("field", ["id", "paid", "amount"])
    def test_tampering_any_field_fails(self, field: str) -> None:
        verifier = SignatureVerifier(signature_key=KEY, allow_bypass=False, environment="test")
        fields = signed({"id": "abc123", "paid": "true", "amount": "5000"})
        fields[field] = fields[field] + "x"
        assert verifier.verify_callback(fields) is SignatureCheck.INVALID

    def test_missing_signature_fails_closed(self) -> None:
        verifier = SignatureVerifier(signature_key=KEY, allow_bypass=False, environment="test")
        assert verifier.verify_callback({"id": "abc123", "paid": "true"}) is SignatureCheck.INVALID
        assert verifier.verify_callback({"id": "abc123", "x_signature": ""}) is SignatureCheck.INVALID

    @pytest.mark.parametrize("padding", [" {} ", "{}\n", "\t{}"])
    def test_signature_with_whitespace_is_rejected(self, padding: str) -> None:
        verifier = SignatureVerifier(signature_key=KEY, allow_bypass=False, environment="test")
        fields = signed({"id": "abc123", "paid": "true", "amount": "5000"})
        fields["x_signature"] = padding.format(fields["x_signature"])
        assert verifier.verify_callback(fields) is SignatureCheck.INVALID

    def test_callback_signature_does_not_pass_redirect_check(self) -> None:
        verifier = SignatureVerifier(signature_key=KEY, allow_bypass=False, environment="test")
        fields = signed({"id": "abc123", "paid": "true"})
        assert verifier.verify_redirect(fields) is SignatureCheck.INVALID

    def test_valid_redirect_is_verified(self) -> None:
        verifier = SignatureVerifier(signature_key=KEY, allow_bypass=False, environment="test")
        query = {
            "billplz[id]": "abc123",
            "billplz[paid]": "true",
            "billplz[paid_at]": "2026-10-19 10:00:00 +0800",
            "billplz[x_signature]": GOLDEN_REDIRECT,
        }
        assert verifier.verify_redirect(parse_redirect_query(query)) is SignatureCheck.VERIFIED

    def test_require_raises_without_detail(self) -> None:
        verifier = SignatureVerifier(signature_key=KEY, allow_bypass=False, environment="test")
        with pytest.raises(SignatureError) as excinfo:
            verifier.require_callback({"id": "abc123", "x_signature": "deadbeef"})
        assert str(excinfo.value) == "invalid signature"

    def test_require_returns_check_when_valid(self) -> None:
        verifier = SignatureVerifier(signature_key=KEY, allow_bypass=False, environment="test")
        assert verifier.require_callback(signed({"id": "abc123"})) is SignatureCheck.VERIFIED


class TestBypass:
    def test_bypass_is_distinct_from_verified(self) -> None:
        verifier = SignatureVerifier(signature_key="", allow_bypass=True, environment="development")
        check = verifier.verify_callback({"id": "abc123"})
        assert check is SignatureCheck.BYPASSED
        assert check is not SignatureCheck.VERIFIED
        assert check.accepted

    def test_missing_key_without_bypass_is_configuration_error(self) -> None:
        verifier = SignatureVerifier(signature_key="", allow_bypass=False, environment="development")
        with pytest.raises(ConfigurationError):
            verifier.verify_callback({"id": "abc123", "x_signature": "x"})

    def test_bypass_refused_in_production(self) -> None:
        with pytest.raises(ConfigurationError):
            SignatureVerifier(signature_key="", allow_bypass=True, environment="production")

    def test_bypass_flag_ignored_when_key_present(self) -> None:
        verifier = SignatureVerifier(signature_key=KEY, allow_bypass=True, environment="development")
        assert verifier.verify_callback({"id": "abc123", "x_signature": "bad"}) is SignatureCheck.INVALID

    def test_reads_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("BILLPLZ_SIGNATURE_BYPASS", "true")
        monkeypatch.setenv("APP_ENV", "production")
        with pytest.raises(ConfigurationError):
            SignatureVerifier()


def test_parse_redirect_query_ignores_other_params() -> None:
    query = {"billplz[id]": "abc", "billplz[paid]": "false", "utm_source": "mail"}
    assert parse_redirect_query(query) == {"id": "abc", "paid": "false"}
