import importlib
import os


def test_main_importable(monkeypatch):
    """The application imports without circular import errors."""
    monkeypatch.setenv("APP_ENV", os.getenv("APP_ENV", "dev"))

    module = importlib.import_module("servicebook.main")
    assert getattr(module, "app", None) is not None


def test_job_runner_importable():
    module = importlib.import_module("servicebook.jobs.run")
    assert callable(module.main)
