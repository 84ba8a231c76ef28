import types

import pytest

from servicebook import main


def _settings(**overrides):
    class Dummy:
        app_env = "prod"
        testing = False
        stripe_secret_key = None
        stripe_webhook_secret = None
        admin_basic_username = "admin"
        admin_basic_password = "password"
        dispatcher_basic_username = None
        dispatcher_basic_password = None
        accountant_basic_username = None
        accountant_basic_password = None
        viewer_basic_username = None
        viewer_basic_password = None

    settings_obj = Dummy()
    for key, value in overrides.items():
        setattr(settings_obj, key, value)
    return settings_obj


def _disable_pytest_shortcuts(monkeypatch):
    monkeypatch.delenv("PYTEST_CURRENT_TEST", raising=False)
    monkeypatch.setattr(main, "sys", types.SimpleNamespace(argv=["servicebook"]))


def test_prod_requires_admin_credentials(monkeypatch, caplog):
    settings_obj = _settings(admin_basic_username=None, admin_basic_password=None)
    _disable_pytest_shortcuts(monkeypatch)

    with caplog.at_level("ERROR"):
        with pytest.raises(RuntimeError):
            main._validate_prod_config(settings_obj)

    details = [record.__dict__.get("extra", {}).get("detail") for record in caplog.records]
    assert any("admin credential" in str(detail) for detail in details)


def test_prod_requires_webhook_secret_with_stripe(monkeypatch):
    settings_obj = _settings(stripe_secret_key="sk_live_x")
    _disable_pytest_shortcuts(monkeypatch)

    with pytest.raises(RuntimeError):
        main._validate_prod_config(settings_obj)

    main._validate_prod_config(_settings(stripe_secret_key="sk_live_x", stripe_webhook_secret="whsec_x"))


def test_dev_skips_validation(monkeypatch):
    _disable_pytest_shortcuts(monkeypatch)

    main._validate_prod_config(_settings(app_env="dev", admin_basic_username=None))
