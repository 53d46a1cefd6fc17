from __future__ import annotations

from codex_account_proxy.gateway.fallback import (
    UNSUPPORTED_MODEL_CODE,
    get_unsupported_model_info,
    next_fallback_model,
    resolve_fallback_model,
    unsupported_model_payload,
)
from codex_account_proxy.gateway.retry_budget import (
    PROFILE_LIMITS,
    RetryBudgetTracker,
    resolve_retry_budget_limits,
)

UNSUPPORTED_BODY = {
    "error": {
        "code": UNSUPPORTED_MODEL_CODE,
        "message": "The 'gpt-5.3-codex-spark' model is not supported when using Codex with a ChatGPT account.",
    }
}


def test_retry_budget_profiles_and_overrides() -> None:
    limits = resolve_retry_budget_limits(
        "aggressive",
        {"network": 1.9, "server": -1, "empty_response": True, "auth_refresh": "5", "unknown": 3},
    )

    assert limits == {**PROFILE_LIMITS["aggressive"], "network": 1}
    assert resolve_retry_budget_limits("nonsense") == PROFILE_LIMITS["balanced"]
    assert resolve_retry_budget_limits("conservative", {"rate_limit_global": 0})["rate_limit_global"] == 0


def test_retry_budget_tracker_counts_per_class() -> None:
    tracker = RetryBudgetTracker({"network": 2, "server": 1})

    assert tracker.consume("network")
    assert tracker.consume("network")
    assert not tracker.consume("network")
    assert tracker.remaining("network") == 0
    assert tracker.remaining("server") == 1
    assert not tracker.consume("empty_response")
    assert tracker.usage["network"] == 2
    assert tracker.limits["auth_refresh"] == 0


def test_fallback_chain_and_gated_edge() -> None:
    assert next_fallback_model("gpt-5.3-codex-spark") == "gpt-5.3-codex"
    assert next_fallback_model("gpt-5.3-codex") == "gpt-5.2-codex"
    assert next_fallback_model("gpt-5.3-codex", allow_gpt53_to_gpt52=False) == "gpt-5-codex"
    assert next_fallback_model("gpt-5-codex") is None
    assert next_fallback_model("gpt-5.1") is None
    assert next_fallback_model(None) is None


def test_unsupported_model_detection() -> None:
    by_code = get_unsupported_model_info(UNSUPPORTED_BODY)
    by_message = get_unsupported_model_info(
        {"detail": "The 'gpt-5.3-codex' model is not currently available for this ChatGPT account when using Codex"}
    )
    unrelated = get_unsupported_model_info({"error": {"code": "invalid_request", "message": "bad"}})

    assert by_code.is_unsupported
    assert by_code.unsupported_model == "gpt-5.3-codex-spark"
    assert by_message.is_unsupported
    assert by_message.unsupported_model == "gpt-5.3-codex"
    assert not unrelated.is_unsupported
    assert not get_unsupported_model_info(None).is_unsupported


def test_resolve_fallback_skips_attempted_models_and_caps_hops() -> None:
    assert (
        resolve_fallback_model(
            "gpt-5.3-codex-spark", UNSUPPORTED_BODY, attempted_models=["gpt-5.3-codex-spark"], enabled=True
        )
        == "gpt-5.3-codex"
    )
    assert (
        resolve_fallback_model(
            "gpt-5.3-codex-spark",
            UNSUPPORTED_BODY,
            attempted_models=["gpt-5.3-codex-spark", "gpt-5.3-codex"],
            enabled=True,
        )
        == "gpt-5.2-codex"
    )
    assert (
        resolve_fallback_model(
            None, UNSUPPORTED_BODY, attempted_models=["gpt-5.3-codex-spark"], enabled=True
        )
        == "gpt-5.3-codex"
    )
    assert (
        resolve_fallback_model(
            "gpt-5.3-codex-spark", UNSUPPORTED_BODY, attempted_models=["gpt-5.3-codex-spark"], enabled=False
        )
        is None
    )
    assert (
        resolve_fallback_model(
            "gpt-5.2-codex",
            UNSUPPORTED_BODY,
            attempted_models=["a", "b", "c", "d", "gpt-5.2-codex"],
            enabled=True,
        )
        is None
    )
    assert (
        resolve_fallback_model(
            "gpt-5.2-codex", {"error": {"message": "other"}}, attempted_models=["gpt-5.2-codex"], enabled=True
        )
        is None
    )


def test_unsupported_model_payload() -> None:
    payload = unsupported_model_payload("gpt-5.3-codex", upstream_message="upstream text")

    assert payload["error"]["code"] == UNSUPPORTED_MODEL_CODE
    assert payload["error"]["type"] == "entitlement_error"
    assert payload["error"]["unsupported_model"] == "gpt-5.3-codex"
    assert payload["error"]["upstream_message"] == "upstream text"
    assert "'gpt-5.3-codex'" in payload["error"]["message"]
    assert "unsupported_model" not in unsupported_model_payload(None)["error"]
