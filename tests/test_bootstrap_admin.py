import importlib.util
from pathlib import Path

import pytest

from binpickup.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def script():
    module_spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


async def test_creates_admin(script):
    result = await script.bootstrap_admin("ops@example.com", "Ops", "Secure#Pass1")

    assert result["status"] == "created"
    account = await get_runtime().store.get_account_by_email("ops@example.com")
    assert account.role == "admin"
    assert account.id == result["user_id"]


async def test_promotes_existing_customer_then_noops(script):
    runtime = get_runtime()
    account, _ = await runtime.auth.register(
        name="Casey", email="casey@example.com", password="Secure#Pass1"
    )

    promoted = await script.bootstrap_admin("casey@example.com", "Casey", "Secure#Pass1")
    again = await script.bootstrap_admin("casey@example.com", "Casey", "Secure#Pass1")

    assert promoted == {"user_id": account.id, "email": "casey@example.com", "status": "promoted"}
    assert again["status"] == "already_admin"


async def test_dry_run_writes_nothing(script):
    result = await script.bootstrap_admin("dry@example.com", "Dry", "Secure#Pass1", dry_run=True)

    assert result == {"user_id": None, "email": "dry@example.com", "status": "dry_run"}
    assert await get_runtime().store.get_account_by_email("dry@example.com") is None


def test_missing_password_is_a_usage_error(script, monkeypatch):
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        script.main(["--email", "ops@example.com"])

    assert excinfo.value.code == 2
