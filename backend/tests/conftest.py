"""
Pytest fixtures for shift settlement tests.

Provides an in-memory database, per-test table cleanup, and factories for
stores, games, bins, shifts and lottery packs.
"""

import pytest
from shift_settlement import create_app
from shift_settlement.extensions import db
from shift_settlement.models import LotteryBin, LotteryGame, LotteryPack, LotteryShiftOpening, Store
from shift_settlement.services import shift_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SETTLEMENT_TIMEOUT_SECONDS': 60,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session()

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    store = Store(name="Main Street", code="MAIN")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    store = Store(name="Uptown", code="UPTN")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def game(db_session):
    game = LotteryGame(game_code="1234", name="Lucky 7s", price_cents=200, tickets_per_pack=50)
    db_session.add(game)
    db_session.commit()
    return game


@pytest.fixture(scope='function')
def lottery_bin(db_session, store):
    bin_ = LotteryBin(store_id=store.id, bin_number=1, name="Bin 1")
    db_session.add(bin_)
    db_session.commit()
    return bin_


@pytest.fixture(scope='function')
def open_shift(db_session, store):
    """Shift in OPEN status for cashier-1."""
    shift = shift_service.create_shift(store.id, "cashier-1", opening_cash_cents=10000)
    return shift_service.open_shift(shift.id, "cashier-1")


@pytest.fixture(scope='function')
def make_pack(db_session, store, game):
    """
    Factory for ACTIVE packs activated in a shift, with an opening record.

    Pass opening_serial=None to skip creating the opening.
    """
    counter = {"n": 0}

    def _make(shift, *, serial_start="000", serial_end="049", opening_serial="000", store_id=None):
        counter["n"] += 1
        pack = LotteryPack(
            store_id=store_id or store.id,
            game_id=game.id,
            pack_number=f"P{counter['n']:05d}",
            serial_start=serial_start,
            serial_end=serial_end,
            status="ACTIVE",
            activated_shift_id=shift.id,
        )
        db_session.add(pack)
        db_session.flush()
        if opening_serial is not None:
            db_session.add(LotteryShiftOpening(shift_id=shift.id, pack_id=pack.id, opening_serial=opening_serial))
        db_session.commit()
        return pack

    return _make
