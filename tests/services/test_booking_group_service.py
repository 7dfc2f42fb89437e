"""
Tests for app/services/booking_group_service.py
Covers: create_group, add_room, update_room, remove_room (incl. dissolution),
        update_group, cancel_group, recalculate_and_persist_room_total,
        recalculate_group, transactional rollback
"""
import pytest
from unittest.mock import patch
from datetime import date, timedelta
from decimal import Decimal

from app.models.ontology import (
    Booking, BookingGroup, BookingStatus, CalendarOverride, DateRangePrice,
    FeeSourceType, Payment, PaymentMethod, PaymentStatus, Room, RoomType
)
from app.models.pricing import FeeSelection
from app.models.schemas import (
    BookingCreate, BookingGroupCreate, BookingGroupUpdate, FeeLineIn, GroupRoomIn
)
from app.services.availability_service import AvailabilityService
from app.services.booking_group_service import BookingGroupService
from app.services.booking_service import BookingService
from app.services.exceptions import (
    ConflictError, InvariantViolation, NotFoundError, ValidationError
)
from app.services.locks import group_locks, room_locks

MONDAY = date(2024, 6, 3)
WEDNESDAY = date(2024, 6, 5)


# ── helpers ──────────────────────────────────────────────────────────

def _create_group(db, rooms, guest_count=2, selected=None, check_in=MONDAY, check_out=WEDNESDAY, **kwargs):
    data = BookingGroupCreate(
        guest_name="Szabo Family",
        guest_email="szabo@example.com",
        check_in=check_in,
        check_out=check_out,
        rooms=[
            GroupRoomIn(room_id=r.id, guest_count=guest_count,
                        selected_additional_prices=selected or [])
            for r in rooms
        ],
        **kwargs
    )
    return BookingGroupService(db).create_group(data)


def _premium_room(db, building, name="201", nightly="125"):
    rt = RoomType(building_id=building.id, name="Suite", capacity=4)
    db.add(rt)
    db.flush()
    db.add(DateRangePrice(
        room_type_id=rt.id, start_date=date(2024, 1, 1), end_date=date(2024, 12, 31),
        weekday_price=Decimal(nightly), weekend_price=Decimal(nightly)
    ))
    room = Room(room_type_id=rt.id, name=name)
    db.add(room)
    db.commit()
    return room


def _assert_group_sum(db, group_id):
    """团体总价等于所有成员房间总价之和"""
    group = db.query(BookingGroup).filter(BookingGroup.id == group_id).first()
    member_sum = sum((b.total_amount or Decimal("0") for b in group.bookings), Decimal("0"))
    assert (group.total_amount or Decimal("0")) == member_sum
    return group


def _breakfast(fees):
    return {"sourceId": fees["breakfast"].id, "sourceType": FeeSourceType.ROOM_TYPE.value}


# ── create ───────────────────────────────────────────────────────────

class TestCreateGroup:

    def test_create_prices_every_member(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b])
        assert len(group.bookings) == 2
        for booking in group.bookings:
            # 2 晚 × 100 + 游客税 10 × 2 晚
            assert booking.total_amount == Decimal("220")
            assert [(l.title, l.quantity) for l in booking.additional_prices] == [("Tourist tax", 2)]
            assert booking.check_in == MONDAY
            assert booking.guest_name == "Szabo Family"
        assert group.total_amount == Decimal("440")
        _assert_group_sum(db_session, group.id)

    def test_create_with_optional_fee(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b], selected=[_breakfast(fees)])
        assert group.total_amount == Decimal("460")

    def test_zero_total_stored_as_null(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b],
                              check_in=date(2025, 2, 3), check_out=date(2025, 2, 5))
        assert group.total_amount is None
        assert all(b.total_amount is None for b in group.bookings)

    def test_requires_two_rooms(self, db_session, room):
        with pytest.raises(ValidationError):
            _create_group(db_session, [room])

    def test_duplicate_room_rejected(self, db_session, room):
        with pytest.raises(ValidationError):
            _create_group(db_session, [room, room])

    def test_inactive_room_rejected(self, db_session, room, inactive_room):
        with pytest.raises(ValidationError):
            _create_group(db_session, [room, inactive_room])

    def test_capacity_enforced(self, db_session, room, room_b):
        with pytest.raises(ValidationError):
            _create_group(db_session, [room, room_b], guest_count=4)

    def test_conflict_rolls_back_whole_group(self, db_session, room, room_b):
        db_session.add(Booking(
            room_id=room_b.id, guest_name="Other", guest_count=1,
            check_in=MONDAY + timedelta(days=1), check_out=MONDAY + timedelta(days=4)
        ))
        db_session.commit()
        with pytest.raises(ConflictError):
            _create_group(db_session, [room, room_b])
        assert db_session.query(BookingGroup).count() == 0
        assert db_session.query(Booking).filter(Booking.room_id == room.id).count() == 0


# ── add ──────────────────────────────────────────────────────────────

class TestAddRoom:

    def test_add_room_updates_group_total(self, db_session, room, room_b, room_c, fees):
        group = _create_group(db_session, [room, room_b])
        totals = BookingGroupService(db_session).add_room(group.id, room_c.id, guest_count=1)
        assert totals.room_total == Decimal("220")
        assert totals.group_total == Decimal("660")
        assert totals.booking_id is not None

        group = _assert_group_sum(db_session, group.id)
        assert len(group.bookings) == 3
        assert group.total_amount == Decimal("660")

    def test_add_room_snapshots_selection(self, db_session, room, room_b, room_c, fees):
        group = _create_group(db_session, [room, room_b])
        selection = FeeSelection(fees["breakfast"].id, FeeSourceType.ROOM_TYPE)
        totals = BookingGroupService(db_session).add_room(group.id, room_c.id, 3, [selection])
        booking = db_session.query(Booking).filter(Booking.id == totals.booking_id).first()
        assert {l.title: l.quantity for l in booking.additional_prices} == {
            "Tourist tax": 2, "Breakfast": 3
        }
        assert totals.room_total == Decimal("235")

    def test_add_existing_member_rejected(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        with pytest.raises(ValidationError):
            BookingGroupService(db_session).add_room(group.id, room.id)

    def test_add_conflicting_room_rejected(self, db_session, room, room_b, room_c):
        group = _create_group(db_session, [room, room_b])
        db_session.add(Booking(
            room_id=room_c.id, guest_name="Other", guest_count=1,
            check_in=WEDNESDAY - timedelta(days=1), check_out=WEDNESDAY + timedelta(days=2)
        ))
        db_session.commit()
        with pytest.raises(ConflictError):
            BookingGroupService(db_session).add_room(group.id, room_c.id)
        assert len(_assert_group_sum(db_session, group.id).bookings) == 2

    def test_back_to_back_room_accepted(self, db_session, room, room_b, room_c):
        group = _create_group(db_session, [room, room_b])
        db_session.add(Booking(
            room_id=room_c.id, guest_name="Other", guest_count=1,
            check_in=WEDNESDAY, check_out=WEDNESDAY + timedelta(days=2)
        ))
        db_session.commit()
        BookingGroupService(db_session).add_room(group.id, room_c.id)
        assert len(_assert_group_sum(db_session, group.id).bookings) == 3

    def test_unknown_group(self, db_session, room):
        with pytest.raises(NotFoundError):
            BookingGroupService(db_session).add_room(404, room.id)


# ── update ───────────────────────────────────────────────────────────

class TestUpdateRoom:

    def test_guest_count_change_requantifies_fees(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b], selected=[_breakfast(fees)])
        booking_id = group.bookings[0].id

        totals = BookingGroupService(db_session).update_room(group.id, booking_id, guest_count=3)
        # 200 + 20 + 早餐 5 × 3
        assert totals.room_total == Decimal("235")
        assert totals.group_total == Decimal("465")

        booking = db_session.query(Booking).filter(Booking.id == booking_id).first()
        assert booking.guest_count == 3
        assert {l.title: l.quantity for l in booking.additional_prices} == {
            "Tourist tax": 2, "Breakfast": 3
        }
        _assert_group_sum(db_session, group.id)

    def test_selection_change_replaces_snapshot(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b])
        booking_id = group.bookings[1].id
        selection = FeeSelection(fees["breakfast"].id, FeeSourceType.ROOM_TYPE)

        totals = BookingGroupService(db_session).update_room(group.id, booking_id, selected=[selection])
        assert totals.room_total == Decimal("230")
        assert totals.group_total == Decimal("450")

        totals = BookingGroupService(db_session).update_room(group.id, booking_id, selected=[])
        assert totals.room_total == Decimal("220")
        booking = db_session.query(Booking).filter(Booking.id == booking_id).first()
        assert [l.title for l in booking.additional_prices] == ["Tourist tax"]

    def test_explicit_fee_lines(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b])
        booking_id = group.bookings[0].id
        lines = [FeeLineIn(title="Late checkout", price_eur=Decimal("15")),
                 FeeLineIn(title="Parking", price_eur=Decimal("8"), quantity=2)]

        totals = BookingGroupService(db_session).update_room(group.id, booking_id, fee_lines=lines)
        assert totals.room_total == Decimal("231")
        booking = db_session.query(Booking).filter(Booking.id == booking_id).first()
        assert [l.title for l in booking.additional_prices] == ["Late checkout", "Parking"]
        _assert_group_sum(db_session, group.id)

    def test_selection_and_lines_together_rejected(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        with pytest.raises(ValidationError):
            BookingGroupService(db_session).update_room(
                group.id, group.bookings[0].id, selected=[], fee_lines=[]
            )

    def test_move_to_other_room(self, db_session, room, room_b, building):
        suite = _premium_room(db_session, building)
        group = _create_group(db_session, [room, room_b])
        booking_id = group.bookings[0].id

        totals = BookingGroupService(db_session).update_room(group.id, booking_id, room_id=suite.id)
        assert totals.room_total == Decimal("250")
        assert totals.group_total == Decimal("450")
        booking = db_session.query(Booking).filter(Booking.id == booking_id).first()
        assert booking.room_id == suite.id

    def test_move_into_conflict_rolls_back(self, db_session, room, room_b, room_c):
        group = _create_group(db_session, [room, room_b])
        db_session.add(Booking(
            room_id=room_c.id, guest_name="Other", guest_count=1,
            check_in=MONDAY, check_out=WEDNESDAY
        ))
        db_session.commit()
        booking_id = group.bookings[0].id

        with pytest.raises(ConflictError):
            BookingGroupService(db_session).update_room(group.id, booking_id, room_id=room_c.id)
        booking = db_session.query(Booking).filter(Booking.id == booking_id).first()
        assert booking.room_id == room.id

    def test_move_to_sibling_room_rejected(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        with pytest.raises(ValidationError):
            BookingGroupService(db_session).update_room(group.id, group.bookings[0].id, room_id=room_b.id)

    def test_non_member_booking(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        with pytest.raises(NotFoundError):
            BookingGroupService(db_session).update_room(group.id, 999, guest_count=1)

    def test_failure_after_snapshot_replacement_rolls_back(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b])
        booking_id = group.bookings[0].id

        with patch.object(BookingGroupService, "_persist_group_total",
                          side_effect=RuntimeError("database went away")):
            with pytest.raises(RuntimeError):
                BookingGroupService(db_session).update_room(
                    group.id, booking_id, fee_lines=[FeeLineIn(title="Sauna", price_eur=Decimal("30"))]
                )

        booking = db_session.query(Booking).filter(Booking.id == booking_id).first()
        assert [l.title for l in booking.additional_prices] == ["Tourist tax"]
        assert booking.total_amount == Decimal("220")
        assert _assert_group_sum(db_session, group.id).total_amount == Decimal("440")


# ── remove ───────────────────────────────────────────────────────────

class TestRemoveRoom:

    def test_remove_from_larger_group(self, db_session, room, room_b, room_c, fees):
        group = _create_group(db_session, [room, room_b, room_c])
        removed_id = group.bookings[0].id

        result = BookingGroupService(db_session).remove_room(group.id, removed_id)
        assert result["dissolved"] is False
        assert result["group_total"] == Decimal("440")

        group = _assert_group_sum(db_session, group.id)
        assert len(group.bookings) == 2
        assert db_session.query(Booking).filter(Booking.id == removed_id).first() is None

    def test_remove_dissolves_two_room_group(self, db_session, room, building):
        suite = _premium_room(db_session, building)
        group = _create_group(db_session, [room, suite])
        group_id = group.id
        assert group.total_amount == Decimal("450")
        removed_id = next(b.id for b in group.bookings if b.room_id == room.id)
        survivor_id = next(b.id for b in group.bookings if b.room_id == suite.id)

        result = BookingGroupService(db_session).remove_room(group_id, removed_id)
        assert result["dissolved"] is True
        assert result["standalone_booking_id"] == survivor_id

        survivor = db_session.query(Booking).filter(Booking.id == survivor_id).first()
        assert survivor.group_id is None
        assert survivor.total_amount == Decimal("250")
        assert db_session.query(BookingGroup).filter(BookingGroup.id == group_id).first() is None
        assert db_session.query(Booking).filter(Booking.id == removed_id).first() is None

    def test_dissolve_transfers_payments_and_flags(self, db_session, room, room_b):
        group = _create_group(
            db_session, [room, room_b], notes="VIP",
            invoice_sent=True, cleaned=True, payment_status=PaymentStatus.DEPOSIT_PAID
        )
        removed, survivor = group.bookings
        db_session.add_all([
            Payment(group_id=group.id, amount=Decimal("100"), method=PaymentMethod.TRANSFER, date=MONDAY),
            Payment(booking_id=removed.id, amount=Decimal("20"), method=PaymentMethod.CASH, date=MONDAY),
        ])
        db_session.commit()
        group_id, removed_id, survivor_id = group.id, removed.id, survivor.id

        BookingGroupService(db_session).remove_room(group_id, removed_id)

        survivor = db_session.query(Booking).filter(Booking.id == survivor_id).first()
        assert survivor.invoice_sent is True
        assert survivor.cleaned is True
        assert survivor.guest_registered is False
        assert survivor.payment_status == PaymentStatus.DEPOSIT_PAID
        assert survivor.notes == "VIP"
        payments = db_session.query(Payment).order_by(Payment.id).all()
        assert [p.booking_id for p in payments] == [survivor_id, survivor_id]
        assert all(p.group_id is None for p in payments)

    def test_removed_booking_payments_move_to_group(self, db_session, room, room_b, room_c):
        group = _create_group(db_session, [room, room_b, room_c])
        removed_id = group.bookings[2].id
        db_session.add(Payment(booking_id=removed_id, amount=Decimal("50"),
                               method=PaymentMethod.CREDIT_CARD, date=MONDAY))
        db_session.commit()

        BookingGroupService(db_session).remove_room(group.id, removed_id)
        payment = db_session.query(Payment).first()
        assert payment.booking_id is None
        assert payment.group_id == group.id

    def test_last_member_is_invariant_violation(self, db_session, room):
        group = BookingGroup(guest_name="Broken", check_in=MONDAY, check_out=WEDNESDAY)
        db_session.add(group)
        db_session.add(Booking(room=room, group=group, guest_name="Broken", guest_count=1,
                               check_in=MONDAY, check_out=WEDNESDAY))
        db_session.commit()

        with pytest.raises(InvariantViolation):
            BookingGroupService(db_session).remove_room(group.id, group.bookings[0].id)
        assert db_session.query(Booking).count() == 1
        assert db_session.query(BookingGroup).count() == 1


# ── recalculation ────────────────────────────────────────────────────

class TestRecalculate:

    def test_room_total_follows_live_rules(self, db_session, room, room_b, room_type, fees):
        group = _create_group(db_session, [room, room_b])
        booking_id = group.bookings[0].id
        db_session.add(CalendarOverride(room_type_id=room_type.id, date=MONDAY, price=Decimal("40")))
        db_session.commit()

        totals = BookingGroupService(db_session).recalculate_and_persist_room_total(booking_id, group.id)
        assert totals.room_total == Decimal("160")
        # 兄弟房间同房型，团体汇总同样按新规则计算
        assert totals.group_total == Decimal("320")
        group = _assert_group_sum(db_session, group.id)
        assert [b.total_amount for b in group.bookings] == [Decimal("160"), Decimal("160")]

    def test_recalculate_group(self, db_session, room, room_b, room_type, fees):
        group = _create_group(db_session, [room, room_b])
        db_session.add(CalendarOverride(room_type_id=room_type.id, date=MONDAY, price=Decimal("40")))
        db_session.commit()

        pricing = BookingGroupService(db_session).recalculate_group(group.id)
        assert pricing.group_grand_total == Decimal("320")
        group = _assert_group_sum(db_session, group.id)
        assert group.total_amount == Decimal("320")

    def test_snapshot_survives_definition_change(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b])
        fees["tax"].price_eur = Decimal("99")
        db_session.commit()

        totals = BookingGroupService(db_session).recalculate_and_persist_room_total(
            group.bookings[0].id, group.id
        )
        assert totals.room_total == Decimal("220")


def test_members_inherit_group_status(db_session, room, room_b):
    group = _create_group(db_session, [room, room_b], status=BookingStatus.CONFIRMED)
    assert all(b.status == BookingStatus.CONFIRMED for b in group.bookings)


def test_dissolution_releases_lock_entries(db_session, room, room_b):
    group = _create_group(db_session, [room, room_b])
    group_id = group.id
    BookingGroupService(db_session).remove_room(group_id, group.bookings[0].id)
    assert group_id not in group_locks
    assert len(room_locks) == 0


def test_add_room_locks_target_room_row(db_session, room, room_b, room_c):
    group = _create_group(db_session, [room, room_b])
    with patch.object(AvailabilityService, "lock_rooms", autospec=True, return_value=[]) as lock_rooms:
        BookingGroupService(db_session).add_room(group.id, room_c.id)
    lock_rooms.assert_called_once()
    assert set(lock_rooms.call_args[0][1]) == {room_c.id}


# ── group-level changes ──────────────────────────────────────────────

class TestUpdateGroup:

    def test_date_change_requantifies_every_member(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b], selected=[_breakfast(fees)])
        assert group.total_amount == Decimal("460")

        # 周一至周四 4 晚：房费 400 + 游客税 40 + 早餐 2 人 10
        updated = BookingGroupService(db_session).update_group(
            group.id, BookingGroupUpdate(check_out=date(2024, 6, 7))
        )
        assert updated.check_out == date(2024, 6, 7)
        assert updated.total_amount == Decimal("900")
        for booking in updated.bookings:
            assert booking.check_in == MONDAY
            assert booking.check_out == date(2024, 6, 7)
            assert booking.total_amount == Decimal("450")
            assert {l.title: l.quantity for l in booking.additional_prices} == {
                "Tourist tax": 4, "Breakfast": 2
            }
        _assert_group_sum(db_session, group.id)

    def test_shift_overlapping_own_window(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b])
        updated = BookingGroupService(db_session).update_group(
            group.id, BookingGroupUpdate(check_in=MONDAY + timedelta(days=1), check_out=WEDNESDAY + timedelta(days=1))
        )
        assert [b.check_in for b in updated.bookings] == [MONDAY + timedelta(days=1)] * 2
        assert updated.total_amount == Decimal("440")

    def test_date_change_conflict_rolls_back(self, db_session, room, room_b, fees):
        group = _create_group(db_session, [room, room_b])
        group_id = group.id
        BookingService(db_session).create_booking(BookingCreate(
            room_id=room_b.id, guest_name="Other",
            check_in=WEDNESDAY, check_out=WEDNESDAY + timedelta(days=2)
        ))

        with pytest.raises(ConflictError) as exc_info:
            BookingGroupService(db_session).update_group(
                group_id, BookingGroupUpdate(check_out=WEDNESDAY + timedelta(days=1))
            )
        assert exc_info.value.room_id == room_b.id

        group = db_session.query(BookingGroup).filter(BookingGroup.id == group_id).first()
        assert group.check_out == WEDNESDAY
        assert group.total_amount == Decimal("440")
        for booking in group.bookings:
            assert booking.check_out == WEDNESDAY
            assert booking.additional_prices[0].quantity == 2

    def test_guest_fields_copied_to_members(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        updated = BookingGroupService(db_session).update_group(group.id, BookingGroupUpdate(
            guest_name="Szabo Peter", guest_phone="+36 1 234 5678",
            status=BookingStatus.CONFIRMED, invoice_sent=True
        ))
        assert updated.guest_name == "Szabo Peter"
        assert updated.invoice_sent is True
        # 未出现在请求中的字段保持不变
        assert updated.guest_email == "szabo@example.com"
        for booking in updated.bookings:
            assert booking.guest_name == "Szabo Peter"
            assert booking.guest_phone == "+36 1 234 5678"
            assert booking.status == BookingStatus.CONFIRMED
            assert booking.invoice_sent is False
        assert updated.total_amount == Decimal("400")

    def test_invalid_window_rejected(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        with pytest.raises(ValidationError):
            BookingGroupService(db_session).update_group(group.id, BookingGroupUpdate(check_in=WEDNESDAY))

    def test_blank_guest_name_rejected(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        with pytest.raises(ValidationError):
            BookingGroupService(db_session).update_group(group.id, BookingGroupUpdate(guest_name=""))

    def test_missing_group(self, db_session):
        with pytest.raises(NotFoundError):
            BookingGroupService(db_session).update_group(404, BookingGroupUpdate(notes="late arrival"))


class TestCancelGroup:

    def test_cancel_releases_rooms(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        cancelled = BookingGroupService(db_session).cancel_group(group.id)
        assert cancelled.status == BookingStatus.CANCELLED
        assert all(b.status == BookingStatus.CANCELLED for b in cancelled.bookings)
        assert cancelled.total_amount == Decimal("400")

        booking = BookingService(db_session).create_booking(BookingCreate(
            room_id=room.id, guest_name="Next", check_in=MONDAY, check_out=WEDNESDAY
        ))
        assert booking.id is not None

    def test_cancel_twice_rejected(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        BookingGroupService(db_session).cancel_group(group.id)
        with pytest.raises(ValidationError):
            BookingGroupService(db_session).cancel_group(group.id)

    def test_cancelled_group_rejects_changes(self, db_session, room, room_b, room_c):
        group = _create_group(db_session, [room, room_b])
        service = BookingGroupService(db_session)
        service.cancel_group(group.id)
        with pytest.raises(ValidationError):
            service.add_room(group.id, room_c.id)
        with pytest.raises(ValidationError):
            service.update_group(group.id, BookingGroupUpdate(notes="reopen"))

    def test_checked_in_member_blocks_cancel(self, db_session, room, room_b):
        group = _create_group(db_session, [room, room_b])
        group.bookings[0].status = BookingStatus.CHECKED_IN
        db_session.commit()
        with pytest.raises(ValidationError):
            BookingGroupService(db_session).cancel_group(group.id)
        db_session.refresh(group)
        assert group.status == BookingStatus.INCOMING

    def test_missing_group(self, db_session):
        with pytest.raises(NotFoundError):
            BookingGroupService(db_session).cancel_group(404)
