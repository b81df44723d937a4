"""
Rental lifecycle: the state transitions of a rental and the vehicle and
deposit bookkeeping that goes with each one.

Every operation takes the acting ``User`` explicitly and works in four steps:
permission check, validation (nothing written on failure), one database
transaction, one log line. History is kept by replication: a transition
inserts a copy of the rental carrying the new state and archives the
original (inactive, not latest, soft-deleted). Returning a rental is terminal
and archives in place.
"""
import logging
from decimal import Decimal

from flask import current_app
from werkzeug.security import check_password_hash

from accounting import record_sale, to_decimal, validate_payments
from errors import EntityKind, NotFoundError, ValidationError, find_or_fail, require, transaction
from models import Customer, Deposit, DepositType, Rental, User, Vehicle, VehicleStatus, db, utcnow

logger = logging.getLogger(__name__)

# Status labels written to Rental.status
NEW_RENTAL = 'New Rental'
ADDED_COMING_DATE = 'Added Coming Date'
EXTENDED = 'Extended'
TEMP_RETURN = 'Temp. Return'
CHANGED_VEHICLE = 'Changed Vehicle'
CHANGED_DEPOSIT = 'Changed Deposit'
RETURNED = 'Returned'

SAME_STATUS_MESSAGE = 'The vehicle is already in this status. Please choose a different status.'


# ---------------- VALIDATION HELPERS ----------------
def _exists(model, identifier):
    if identifier in (None, ''):
        return None
    record = db.session.get(model, identifier)
    if record is None or getattr(record, 'deleted_at', None) is not None:
        return None
    return record


def _check_status(errors, field, status_id, vehicle):
    """A target status must exist and differ from the vehicle's current one."""
    status = _exists(VehicleStatus, status_id)
    if status is None:
        errors[field] = 'The selected vehicle status does not exist.'
    elif vehicle is not None and vehicle.current_status_id == status.id:
        errors[field] = SAME_STATUS_MESSAGE


def _check_incharger(errors, incharger_id):
    if _exists(User, incharger_id) is None:
        errors['incharger_id'] = 'The selected incharge person does not exist.'


def validate_deposits(rows, prefix='deposits'):
    errors = {}
    for index, row in enumerate(rows):
        key = f"{prefix}-{index}"
        if _exists(DepositType, row.get('type_id')) is None:
            errors[f"{key}-type_id"] = f"The deposit type for deposit #{index + 1} is required."
        if not str(row.get('deposit_value') or '').strip():
            errors[f"{key}-deposit_value"] = f"The value for deposit #{index + 1} is required."
    return errors


def _load_rental(rental_id):
    rental = db.session.get(Rental, rental_id)
    if rental is None:
        raise NotFoundError(EntityKind.RENTAL, rental_id)
    return rental


def _check_current(errors, rental):
    if rental.is_deleted or not rental.is_active or not rental.is_latest_version:
        errors['rental_id'] = 'This rental is no longer active.'


# ---------------- WRITE HELPERS ----------------
def _archive(rental, actor, **changes):
    """Insert the next version of ``rental`` and retire the original."""
    successor = rental.replicate(is_active=True, is_latest_version=True, user_id=actor.id, **changes)
    db.session.add(successor)
    rental.is_active = False
    rental.is_latest_version = False
    rental.soft_delete()
    db.session.flush()
    return successor


def _active_deposits(rental):
    return Deposit.query.filter_by(rental_id=rental.id, is_active=True).order_by(Deposit.id).all()


def _carry_deposits(original, successor, actor, now):
    """Copy the active deposits onto the new rental version and close the originals."""
    carried = []
    for deposit in _active_deposits(original):
        carried.append(deposit.replicate(
            rental_id=successor.id, is_active=True, start_date=now, end_date=None, user_id=actor.id))
        deposit.is_active = False
        deposit.end_date = now
    db.session.add_all(carried)
    return carried


def _close_deposits(rental, now):
    deposits = _active_deposits(rental)
    for deposit in deposits:
        deposit.is_active = False
        deposit.end_date = now
    return deposits


def _new_deposits(rows, rental, actor, now):
    """Insert deposit rows; only the first row flagged primary stays primary."""
    deposits = []
    seen_primary = False
    for row in rows:
        deposit_type = find_or_fail(DepositType, row.get('type_id'), EntityKind.DEPOSIT_TYPE)
        is_primary = bool(row.get('is_primary')) and not seen_primary
        seen_primary = seen_primary or is_primary
        deposits.append(Deposit(
            customer_id=rental.customer_id,
            rental_id=rental.id,
            type_id=deposit_type.id,
            deposit_value=str(row['deposit_value']).strip(),
            registered_number=row.get('registered_number'),
            expiry_date=row.get('expiry_date'),
            description=row.get('description'),
            is_primary=is_primary,
            is_active=True,
            start_date=now,
            user_id=actor.id,
        ))
    db.session.add_all(deposits)
    return deposits


def _relink_vehicle(original, successor, actor, status_id=None, location=None):
    """Point the vehicle at the new rental version, if it still points at the old one.

    A vehicle already linked to another rental keeps its link, status and location.
    """
    vehicle = find_or_fail(Vehicle, original.vehicle_id, EntityKind.VEHICLE)
    if vehicle.current_rental_id != original.id:
        logger.warning(
            f"User [ID: {actor.id}] archived Rental [ID: {original.id}] but Vehicle [ID: {vehicle.id}] "
            f"is linked to Rental [ID: {vehicle.current_rental_id}]; link left unchanged")
        return vehicle
    vehicle.current_rental_id = successor.id
    if status_id:
        vehicle.current_status_id = status_id
    if location:
        vehicle.current_location = location
    vehicle.user_id = actor.id
    return vehicle


def _record_payments(actor, payments, rental, sale_date):
    return [
        record_sale(
            actor,
            customer_id=rental.customer_id,
            sale_date=sale_date,
            item_description=payment['description'],
            amount=payment['amount'],
            payment_type=payment['payment_type'],
            credit_account_id=payment.get('credit_account_id'),
            debit_target_account_id=payment.get('debit_target_account_id'),
            memo_ref_no=payment.get('memo_ref_no'),
            rental_id=rental.id,
        )
        for payment in payments
    ]


# ---------------- TRANSITIONS ----------------
def create_rental(actor, *, vehicle_id, customer_id, incharger_id, status_id, start_date, end_date,
                  period, total_cost, notes=None, deposits=(), payments=(), now=None):
    """Hand a vehicle to a customer: rental, deposits, sales and vehicle link in one unit."""
    require(actor, 'rental-create')
    deposits, payments = list(deposits), list(payments)

    errors = {}
    vehicle = _exists(Vehicle, vehicle_id)
    if vehicle is None:
        errors['vehicle_id'] = 'The selected vehicle does not exist.'
    elif vehicle.current_rental_id is not None:
        errors['vehicle_id'] = 'This vehicle is already rented out.'
    if _exists(Customer, customer_id) is None:
        errors['customer_id'] = 'The selected customer does not exist.'
    _check_incharger(errors, incharger_id)
    _check_status(errors, 'status_id', status_id, vehicle)
    if start_date is None:
        errors['start_date'] = 'The start date is required.'
    if end_date is None:
        errors['end_date'] = 'The end date is required.'
    elif start_date is not None and end_date < start_date:
        errors['end_date'] = 'The end date must be on or after the start date.'
    if not (period or '').strip():
        errors['period'] = 'The rental period is required.'
    cost = to_decimal(total_cost)
    if cost is None or cost < 0:
        errors['total_cost'] = 'The total cost must be a number of at least 0.'
    errors.update(validate_deposits(deposits))
    errors.update(validate_payments(payments))
    if errors:
        raise ValidationError(errors)

    now = now or utcnow()
    with transaction('Create rental', actor):
        vehicle = find_or_fail(Vehicle, vehicle_id, EntityKind.VEHICLE)
        customer = find_or_fail(Customer, customer_id, EntityKind.CUSTOMER)
        incharger = find_or_fail(User, incharger_id, EntityKind.INCHARGER)
        status = find_or_fail(VehicleStatus, status_id, EntityKind.VEHICLE_STATUS)

        rental = Rental(
            vehicle_id=vehicle.id,
            customer_id=customer.id,
            incharger_id=incharger.id,
            user_id=actor.id,
            start_date=start_date,
            actual_start_date=start_date,
            end_date=end_date,
            period=period.strip(),
            total_cost=cost,
            status=NEW_RENTAL,
            notes=notes,
            is_active=True,
            is_latest_version=True,
        )
        db.session.add(rental)
        db.session.flush()

        _record_payments(actor, payments, rental, now.date())

        vehicle.current_rental_id = rental.id
        vehicle.current_status_id = status.id
        vehicle.current_location = current_app.config['RENTED_LOCATION']
        vehicle.user_id = actor.id

        _new_deposits(deposits, rental, actor, now)

    logger.info(f"User [ID: {actor.id}] created Rental [ID: {rental.id}] for Vehicle [ID: {vehicle_id}] "
                f"and Customer [ID: {customer_id}] with {len(deposits)} deposit(s)")
    return rental


def add_coming_date(actor, rental_id, *, incharger_id, coming_date, notes=None, status_id=None, now=None):
    """Record the date a customer promised to come back."""
    require(actor, 'rental-edit')
    now = now or utcnow()
    rental = _load_rental(rental_id)

    errors = {}
    _check_current(errors, rental)
    _check_incharger(errors, incharger_id)
    if coming_date is None:
        errors['coming_date'] = 'The coming date is required.'
    elif coming_date <= now.date():
        errors['coming_date'] = 'The coming date must be a date after today.'
    if status_id:
        _check_status(errors, 'status_id', status_id, db.session.get(Vehicle, rental.vehicle_id))
    if errors:
        raise ValidationError(errors)

    with transaction('Add coming date', actor):
        incharger = find_or_fail(User, incharger_id, EntityKind.INCHARGER)
        if status_id:
            find_or_fail(VehicleStatus, status_id, EntityKind.VEHICLE_STATUS)
        successor = _archive(
            rental, actor,
            status=ADDED_COMING_DATE,
            coming_date=coming_date,
            notes=notes if notes is not None else rental.notes,
            incharger_id=incharger.id,
        )
        carried = _carry_deposits(rental, successor, actor, now)
        _relink_vehicle(rental, successor, actor, status_id=status_id)

    logger.info(f"User [ID: {actor.id}] added coming date {coming_date} to Rental [ID: {rental_id}]; "
                f"archived as Rental [ID: {successor.id}] with {len(carried)} deposit(s)")
    return successor


def return_rental(actor, rental_id, *, password, status_id, incharger_id=None, notes=None, now=None):
    """Close a rental for good: deposits handed back, vehicle released.

    ``incharger_id`` and ``notes`` record who took the vehicle back and how; both keep the
    rental's current values when omitted.
    """
    require(actor, 'rental-delete')
    rental = _load_rental(rental_id)
    linked = Vehicle.query.filter_by(current_rental_id=rental.id).first()

    errors = {}
    if rental.is_deleted:
        errors['rental_id'] = 'This rental has already been returned.'
    if not password or not check_password_hash(actor.password, password):
        errors['password'] = 'The provided administrator password does not match.'
    if incharger_id is not None:
        _check_incharger(errors, incharger_id)
    _check_status(errors, 'status_id', status_id, linked or db.session.get(Vehicle, rental.vehicle_id))
    if errors:
        raise ValidationError(errors)

    now = now or utcnow()
    with transaction('Return rental', actor):
        status = find_or_fail(VehicleStatus, status_id, EntityKind.VEHICLE_STATUS)
        closed = _close_deposits(rental, now)

        vehicle = Vehicle.query.filter_by(current_rental_id=rental.id).first()
        if vehicle is not None:
            vehicle.current_rental_id = None
            vehicle.current_location = current_app.config['RETURNED_LOCATION']
        else:
            logger.warning(f"User [ID: {actor.id}] returned Rental [ID: {rental.id}] "
                           f"but no vehicle was linked to it")
            vehicle = find_or_fail(Vehicle, rental.vehicle_id, EntityKind.VEHICLE)
        # A vehicle already out with another rental keeps its status
        if vehicle.current_rental_id is None:
            vehicle.current_status_id = status.id
            vehicle.user_id = actor.id

        if incharger_id is not None:
            rental.incharger_id = find_or_fail(User, incharger_id, EntityKind.INCHARGER).id
        if notes is not None:
            rental.notes = notes
        rental.actual_return_date = now
        rental.status = RETURNED
        rental.is_active = False
        rental.soft_delete(now)

    logger.info(f"User [ID: {actor.id}] returned Rental [ID: {rental_id}], closed {len(closed)} deposit(s), "
                f"Vehicle [ID: {vehicle.id}] set to status [ID: {status_id}]")
    return rental


def extend_rental(actor, rental_id, *, incharger_id, start_date, end_date, period, payments,
                  coming_date=None, notes=None, now=None):
    """Extend a rental with new dates, paid for by one or more payments."""
    require(actor, 'rental-edit')
    rental = _load_rental(rental_id)
    payments = list(payments)

    errors = {}
    _check_current(errors, rental)
    _check_incharger(errors, incharger_id)
    if start_date is None:
        errors['start_date'] = 'The start date is required.'
    if end_date is None:
        errors['end_date'] = 'The end date is required.'
    elif start_date is not None and end_date < start_date:
        errors['end_date'] = 'The end date must be on or after the start date.'
    if not (period or '').strip():
        errors['period'] = 'The rental period is required.'
    if not payments:
        errors['payments'] = 'At least one payment is required to extend a rental.'
    errors.update(validate_payments(payments))
    if errors:
        raise ValidationError(errors)

    now = now or utcnow()
    total_cost = sum((to_decimal(p['amount']) for p in payments), Decimal('0.00'))
    with transaction('Extend rental', actor):
        incharger = find_or_fail(User, incharger_id, EntityKind.INCHARGER)
        successor = _archive(
            rental, actor,
            status=EXTENDED,
            start_date=start_date,
            end_date=end_date,
            coming_date=coming_date,
            period=period.strip(),
            total_cost=total_cost,
            notes=notes if notes is not None else rental.notes,
            incharger_id=incharger.id,
        )
        _record_payments(actor, payments, successor, now.date())
        _carry_deposits(rental, successor, actor, now)
        _relink_vehicle(rental, successor, actor)

    logger.info(f"User [ID: {actor.id}] extended Rental [ID: {rental_id}] to {end_date} "
                f"as Rental [ID: {successor.id}], {len(payments)} payment(s) totalling {total_cost}")
    return successor


def temporary_return(actor, rental_id, *, incharger_id, status_id, end_date, notes=None, now=None):
    """Vehicle comes back to the shop before the rental is settled."""
    require(actor, 'rental-delete')
    rental = _load_rental(rental_id)

    errors = {}
    _check_current(errors, rental)
    _check_incharger(errors, incharger_id)
    _check_status(errors, 'status_id', status_id, db.session.get(Vehicle, rental.vehicle_id))
    if end_date is None:
        errors['end_date'] = 'The end date is required.'
    elif end_date < rental.start_date:
        errors['end_date'] = 'The end date must be on or after the start date.'
    if errors:
        raise ValidationError(errors)

    now = now or utcnow()
    with transaction('Temporary return', actor):
        incharger = find_or_fail(User, incharger_id, EntityKind.INCHARGER)
        status = find_or_fail(VehicleStatus, status_id, EntityKind.VEHICLE_STATUS)
        successor = _archive(
            rental, actor,
            status=TEMP_RETURN,
            end_date=end_date,
            period='0',
            notes=notes if notes is not None else rental.notes,
            incharger_id=incharger.id,
        )
        closed = _close_deposits(rental, now)
        _relink_vehicle(rental, successor, actor, status_id=status.id,
                        location=current_app.config['RETURNED_LOCATION'])

    logger.info(f"User [ID: {actor.id}] temporarily returned Rental [ID: {rental_id}] as Rental "
                f"[ID: {successor.id}], closed {len(closed)} deposit(s)")
    return successor


def exchange_vehicle(actor, rental_id, *, new_vehicle_id, previous_status_id, new_status_id,
                     incharger_id, notes=None, now=None):
    """Swap the rented vehicle for another one."""
    require(actor, 'rental-edit')
    rental = _load_rental(rental_id)
    previous = db.session.get(Vehicle, rental.vehicle_id)

    errors = {}
    _check_current(errors, rental)
    _check_incharger(errors, incharger_id)
    new_vehicle = _exists(Vehicle, new_vehicle_id)
    if new_vehicle is None:
        errors['new_vehicle_id'] = 'The selected vehicle does not exist.'
    elif new_vehicle.id == rental.vehicle_id:
        errors['new_vehicle_id'] = 'Please choose a different vehicle.'
    elif new_vehicle.current_rental_id is not None:
        errors['new_vehicle_id'] = 'This vehicle is already rented out.'
    _check_status(errors, 'previous_status_id', previous_status_id, previous)
    _check_status(errors, 'new_status_id', new_status_id, new_vehicle)
    if errors:
        raise ValidationError(errors)

    now = now or utcnow()
    with transaction('Exchange vehicle', actor):
        incharger = find_or_fail(User, incharger_id, EntityKind.INCHARGER)
        previous = find_or_fail(Vehicle, rental.vehicle_id, EntityKind.VEHICLE)
        new_vehicle = find_or_fail(Vehicle, new_vehicle_id, EntityKind.VEHICLE)
        previous_status = find_or_fail(VehicleStatus, previous_status_id, EntityKind.VEHICLE_STATUS)
        new_status = find_or_fail(VehicleStatus, new_status_id, EntityKind.VEHICLE_STATUS)

        successor = _archive(
            rental, actor,
            status=CHANGED_VEHICLE,
            vehicle_id=new_vehicle.id,
            period='0',
            total_cost=Decimal('0.00'),
            notes=notes if notes is not None else rental.notes,
            incharger_id=incharger.id,
        )
        _carry_deposits(rental, successor, actor, now)

        if previous.current_rental_id == rental.id:
            previous.current_rental_id = None
            previous.current_status_id = previous_status.id
            previous.current_location = current_app.config['RETURNED_LOCATION']
            previous.user_id = actor.id
        else:
            # Out with another rental; leave it as it is
            logger.warning(f"User [ID: {actor.id}] exchanged Rental [ID: {rental.id}] but Vehicle "
                           f"[ID: {previous.id}] was linked to Rental [ID: {previous.current_rental_id}]; "
                           f"previous vehicle left unchanged")

        new_vehicle.current_rental_id = successor.id
        new_vehicle.current_status_id = new_status.id
        new_vehicle.current_location = current_app.config['RENTED_LOCATION']
        new_vehicle.user_id = actor.id

    logger.info(f"User [ID: {actor.id}] exchanged Vehicle [ID: {previous.id}] for Vehicle "
                f"[ID: {new_vehicle.id}] on Rental [ID: {rental_id}], now Rental [ID: {successor.id}]")
    return successor


def exchange_deposit(actor, rental_id, *, incharger_id, deposits, notes=None, now=None):
    """Replace every active deposit of a rental with a new set."""
    require(actor, 'rental-edit')
    rental = _load_rental(rental_id)
    deposits = list(deposits)

    errors = {}
    _check_current(errors, rental)
    _check_incharger(errors, incharger_id)
    if not deposits:
        errors['deposits'] = 'At least one deposit is required.'
    errors.update(validate_deposits(deposits))
    if errors:
        raise ValidationError(errors)

    now = now or utcnow()
    with transaction('Exchange deposit', actor):
        incharger = find_or_fail(User, incharger_id, EntityKind.INCHARGER)
        successor = _archive(
            rental, actor,
            status=CHANGED_DEPOSIT,
            period='0',
            total_cost=Decimal('0.00'),
            notes=notes if notes is not None else rental.notes,
            incharger_id=incharger.id,
        )
        closed = _close_deposits(rental, now)
        created = _new_deposits(deposits, successor, actor, now)
        _relink_vehicle(rental, successor, actor)

    logger.info(f"User [ID: {actor.id}] exchanged {len(closed)} deposit(s) for {len(created)} on Rental "
                f"[ID: {rental_id}], now Rental [ID: {successor.id}]")
    return successor


def rental_history(actor, vehicle_id):
    """Every recorded version of a vehicle's rentals, newest first, archived rows included."""
    require(actor, 'report-list')
    vehicle = find_or_fail(Vehicle, vehicle_id, EntityKind.VEHICLE)
    return (Rental.query
            .filter(Rental.vehicle_id == vehicle.id)
            .order_by(Rental.created_at.desc(), Rental.id.desc())
            .all())
