from decimal import Decimal

import pytest

from config import Config, ConfigurationError, get_config, reload_config
from pricing import PricingPolicy


@pytest.fixture
def env(monkeypatch):
    values = {
        "SUPABASE_URL": "https://project.supabase.co",
        "SUPABASE_KEY": "anon-key",
        "STRIPE_SECRET_KEY": "sk_test_123",
    }
    for key in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER",
                "STRIPE_WEBHOOK_SECRET", "TAX_RATE", "CURRENCY_CODE", "DELIVERY_FEE"):
        monkeypatch.delenv(key, raising=False)
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    return monkeypatch


def test_defaults(env):
    config = Config()

    assert config.checkout.currency_code == "BDT"
    assert config.checkout.delivery_threshold == Decimal("500")
    assert config.checkout.success_redirect_path == "/order"
    assert not config.twilio.enabled
    assert "STRIPE_WEBHOOK_SECRET not set, webhook signatures are not verified" in (
        config.validate_runtime_dependencies()
    )


def test_pricing_policy_from_config(env):
    env.setenv("TAX_RATE", "0.15")
    env.setenv("CURRENCY_CODE", "usd")

    policy = PricingPolicy.from_config(Config().checkout)

    assert policy.tax_rate == Decimal("0.15")
    assert policy.currency == "USD"


@pytest.mark.parametrize("key,value", [
    ("SUPABASE_URL", "http://insecure.example"),
    ("STRIPE_SECRET_KEY", "pk_test_123"),
    ("TAX_RATE", "1.5"),
    ("DELIVERY_FEE", "abc"),
    ("CURRENCY_CODE", "TAKA"),
])
def test_invalid_values_fail_fast(env, key, value):
    env.setenv(key, value)

    with pytest.raises(ConfigurationError):
        Config()


def test_missing_required_variable(env):
    env.delenv("SUPABASE_KEY")

    with pytest.raises(ConfigurationError, match="SUPABASE_KEY"):
        Config()


def test_safe_summary_has_no_secrets(env):
    summary = Config().get_safe_summary()

    assert "sk_test_123" not in str(summary)
    assert summary["pricing"]["tax_rate"] == "0.08"


def test_reload_picks_up_new_environment(env):
    env.setenv("DELIVERY_FEE", "60")
    first = reload_config()
    env.setenv("DELIVERY_FEE", "70")

    assert get_config() is first
    assert reload_config().checkout.delivery_fee == Decimal("70")
    assert get_config().checkout.delivery_fee == Decimal("70")
