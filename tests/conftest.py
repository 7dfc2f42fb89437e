"""
Pytest 配置和共享 fixtures
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from datetime import date
from decimal import Decimal
from fastapi.testclient import TestClient

from app.database import Base, get_db
from app.models import ontology  # noqa
from app.models.ontology import (
    Building, RoomType, Room, DateRangePrice,
    BuildingAdditionalPrice, RoomTypeAdditionalPrice
)
from app.main import app


@pytest.fixture(scope="function")
def db_engine():
    """创建内存数据库引擎"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine):
    """创建数据库会话"""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="function")
def client(db_session):
    """创建测试客户端"""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ============== 房源 Fixtures ==============

@pytest.fixture
def building(db_session):
    """建筑"""
    b = Building(name="Lakeside House")
    db_session.add(b)
    db_session.commit()
    db_session.refresh(b)
    return b


@pytest.fixture
def room_type(db_session, building):
    """双人房型，全年平日 100 / 周末 150"""
    rt = RoomType(building_id=building.id, name="Double", capacity=3)
    db_session.add(rt)
    db_session.flush()
    db_session.add(DateRangePrice(
        room_type_id=rt.id,
        start_date=date(2024, 1, 1),
        end_date=date(2024, 12, 31),
        weekday_price=Decimal("100.00"),
        weekend_price=Decimal("150.00"),
        min_nights=1
    ))
    db_session.commit()
    db_session.refresh(rt)
    return rt


@pytest.fixture
def fees(db_session, building, room_type):
    """必选按晚游客税 10（建筑级）+ 可选按人早餐 5（房型级）"""
    tax = BuildingAdditionalPrice(
        building_id=building.id, title="Tourist tax", price_eur=Decimal("10.00"),
        mandatory=True, per_night=True, per_guest=False, order=1
    )
    breakfast = RoomTypeAdditionalPrice(
        room_type_id=room_type.id, title="Breakfast", price_eur=Decimal("5.00"),
        mandatory=False, per_night=False, per_guest=True, order=1
    )
    db_session.add_all([tax, breakfast])
    db_session.commit()
    return {"tax": tax, "breakfast": breakfast}


def _make_room(db, room_type, name, is_active=True):
    room = Room(room_type_id=room_type.id, name=name, is_active=is_active)
    db.add(room)
    db.commit()
    db.refresh(room)
    return room


@pytest.fixture
def room(db_session, room_type):
    return _make_room(db_session, room_type, "101")


@pytest.fixture
def room_b(db_session, room_type):
    return _make_room(db_session, room_type, "102")


@pytest.fixture
def room_c(db_session, room_type):
    return _make_room(db_session, room_type, "103")


@pytest.fixture
def inactive_room(db_session, room_type):
    return _make_room(db_session, room_type, "199", is_active=False)
