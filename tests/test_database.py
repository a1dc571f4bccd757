import pytest
from sqlalchemy.orm import Session

from tag_custody.config import Settings, configure_logging
from tag_custody.database import atomic, get_db
from tag_custody.models.inventory_unit import InventoryUnit, UnitStatus
from tag_custody.services.stock_service import list_units


class TestAtomic:
    def test_commits_on_success(self, db, session_factory):
        with atomic(db):
            db.add(InventoryUnit(uid="U-1", lot="L1", current_hub_id="H1", status=UnitStatus.AVAILABLE))

        with session_factory() as other:
            assert [u.uid for u in list_units(other)] == ["U-1"]

    def test_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError):
            with atomic(db):
                db.add(InventoryUnit(uid="U-2", lot="L1", current_hub_id="H1"))
                db.flush()
                raise RuntimeError("boom")

        assert list_units(db) == []


class TestSettings:
    def test_webhook_urls_from_env(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_URLS", "https://a.test/hook, ,https://b.test/hook")
        assert Settings().webhook_urls == ["https://a.test/hook", "https://b.test/hook"]

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("WEBHOOK_URLS", raising=False)
        settings = Settings(_env_file=None)
        assert settings.webhook_urls == []
        assert settings.DEFAULT_ACTOR == "system"
        assert settings.SQLITE_BUSY_TIMEOUT > 0


class TestSessionHelpers:
    def test_get_db_closes_session(self):
        gen = get_db()
        session = next(gen)
        assert isinstance(session, Session)
        gen.close()

    def test_configure_logging_accepts_lowercase_level(self):
        configure_logging("debug")
