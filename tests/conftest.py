import pytest
from sqlalchemy.orm import sessionmaker

from tag_custody.database import init_db, make_engine
from tag_custody.models.inventory_unit import UnitKind
from tag_custody.schemas.inventory import ReceiveBatch, TestResults
from tag_custody.services import receiving_service
from tag_custody.services.event_bus import EventBus


@pytest.fixture
def engine(tmp_path):
    # File-backed so worker threads can open their own connections
    engine = make_engine(f"sqlite:///{tmp_path / 'custody.db'}", echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def events():
    return []


@pytest.fixture
def bus(events):
    bus = EventBus()
    bus.subscribe(events.append)
    return bus


@pytest.fixture
def receive(db, bus):
    """Receive units and return their UIDs."""

    def _receive(hub_id="H1", lot="L100", quantity=3, kind=UnitKind.NFC_CHIP, passed=True, **kwargs):
        batch = ReceiveBatch(
            hub_id=hub_id,
            lot=lot,
            quantity=quantity,
            kind=kind,
            test_results=TestResults(read_passed=passed, write_passed=passed),
            **kwargs,
        )
        return [unit.uid for unit in receiving_service.receive_batch(db, bus, batch, actor_id="intake-1")]

    return _receive
