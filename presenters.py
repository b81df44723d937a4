"""
Read-side view models: rentals, customers and vehicles flattened into the
dicts the page bridge sends to the frontend, plus dashboard aggregates.
"""
import logging
import re
from collections import Counter
from datetime import datetime, time, timedelta
from decimal import Decimal

from sqlalchemy.orm import joinedload

from models import (ChartOfAccount, ContactType, Customer, Deposit, DepositType, Rental, User,
                    Vehicle, VehicleClass, VehicleMaker, VehicleModel, VehicleStatus, Visa, db)
from pages import defer

logger = logging.getLogger(__name__)

NOT_AVAILABLE = 'N/A'

NUMERIC_VALUE = re.compile(r'^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$')

# Units for human-readable durations, largest first
DURATION_UNITS = (
    ('year', 365 * 24 * 3600),
    ('month', 30 * 24 * 3600),
    ('week', 7 * 24 * 3600),
    ('day', 24 * 3600),
    ('hour', 3600),
    ('minute', 60),
    ('second', 1),
)


def iso(value):
    return value.isoformat() if value is not None else None


def pick_primary(records):
    """Explicit primary first, then the first non-primary, else None."""
    records = list(records)
    for record in records:
        if record.is_primary:
            return record
    for record in records:
        if not record.is_primary:
            return record
    return None


def humanize_duration(delta):
    seconds = abs(int(delta.total_seconds()))
    for unit, size in DURATION_UNITS:
        count = seconds // size
        if count >= 1:
            return f"{count} {unit}" if count == 1 else f"{count} {unit}s"
    return '1 second'


def overdue_duration(rental, now):
    """(whole days, human text) past the end date, or (None, 'N/A') if not overdue."""
    if rental.actual_return_date is not None or rental.end_date is None:
        return None, NOT_AVAILABLE
    if rental.end_date >= now.date():
        return None, NOT_AVAILABLE
    delta = now - datetime.combine(rental.end_date, time.min)
    return delta.days, humanize_duration(delta)


def is_numeric_value(value):
    return value is not None and bool(NUMERIC_VALUE.match(str(value).strip()))


def deposit_totals(deposits):
    """Sum of cash deposits and count of document deposits."""
    numeric_sum = Decimal('0')
    text_count = 0
    for deposit in deposits:
        if is_numeric_value(deposit.deposit_value):
            numeric_sum += Decimal(str(deposit.deposit_value).strip())
        else:
            text_count += 1
    return {'numeric_deposit_sum': numeric_sum, 'text_deposit_count': text_count}


# ---------------- RECORD FORMATTERS ----------------
def format_contact(contact):
    return {
        'id': contact.id,
        'contact_type_id': contact.contact_type_id,
        'contact_type_name': contact.contact_type.name if contact.contact_type else NOT_AVAILABLE,
        'contact_value': contact.contact_value,
        'description': contact.description,
        'is_primary': bool(contact.is_primary),
        'is_active': 'Yes' if contact.is_active else 'No',
        'created_at': iso(contact.created_at),
        'updated_at': iso(contact.updated_at),
    }


def format_deposit(deposit):
    return {
        'id': deposit.id,
        'type_id': deposit.type_id,
        'rental_id': deposit.rental_id,
        'type_name': deposit.deposit_type.name if deposit.deposit_type else NOT_AVAILABLE,
        'deposit_value': deposit.deposit_value,
        'registered_number': deposit.registered_number,
        'expiry_date': iso(deposit.expiry_date),
        'description': deposit.description,
        'is_primary': bool(deposit.is_primary),
        'is_active': 'Yes' if deposit.is_active else 'No',
        'created_at': iso(deposit.created_at),
        'updated_at': iso(deposit.updated_at),
    }


def format_rental(rental, now):
    customer = rental.customer
    contacts = list(customer.active_contacts) if customer else []
    deposits = list(rental.active_deposits)
    primary_contact = pick_primary(contacts)
    primary_deposit = pick_primary(deposits)
    overdue_days, overdue_human = overdue_duration(rental, now)

    return {
        'id': rental.id,
        'vehicle_id': rental.vehicle_id,
        'vehicle_no': rental.vehicle.vehicle_no if rental.vehicle else NOT_AVAILABLE,
        'customer_id': rental.customer_id,
        'full_name': (customer.full_name or NOT_AVAILABLE) if customer else NOT_AVAILABLE,

        'primary_contact_type': (primary_contact.contact_type.name
                                 if primary_contact and primary_contact.contact_type else NOT_AVAILABLE),
        'primary_contact': primary_contact.contact_value if primary_contact else NOT_AVAILABLE,
        'active_contact_count': len(contacts),

        'primary_deposit_type': (primary_deposit.deposit_type.name
                                 if primary_deposit and primary_deposit.deposit_type else NOT_AVAILABLE),
        'primary_deposit': primary_deposit.deposit_value if primary_deposit else NOT_AVAILABLE,
        'active_deposits_count': len(deposits),

        'active_contacts': [format_contact(c) for c in contacts],
        'active_deposits': [format_deposit(d) for d in deposits],

        'status_name': rental.status,
        'total_cost': rental.total_cost,
        'start_date': iso(rental.start_date),
        'end_date': iso(rental.end_date),
        'coming_date': iso(rental.coming_date),
        'actual_return_date': iso(rental.actual_return_date),
        'period': rental.period,
        'overdue_days': overdue_days,
        'overdue': overdue_human,

        'notes': rental.notes or NOT_AVAILABLE,
        'incharger_name': rental.incharger.name if rental.incharger else 'Initial',
        'user_name': rental.creator.name if rental.creator else 'Initial',
        'is_active': bool(rental.is_active),
        'created_at': iso(rental.created_at) or NOT_AVAILABLE,
        'updated_at': iso(rental.updated_at) or NOT_AVAILABLE,
    }


def format_customer(customer):
    contacts = list(customer.active_contacts)
    primary = pick_primary(contacts)
    return {
        'id': customer.id,
        'first_name': customer.first_name,
        'last_name': customer.last_name,
        'full_name': customer.full_name,
        'date_of_birth': iso(customer.date_of_birth),
        'gender': customer.gender,
        'nationality': customer.nationality,
        'address': customer.full_address or NOT_AVAILABLE,
        'passport_number': customer.passport_number,
        'passport_expiry': iso(customer.passport_expiry),
        'occupation': customer.occupation,
        'notes': customer.notes,
        'primary_contact_type': primary.contact_type.name if primary and primary.contact_type else NOT_AVAILABLE,
        'primary_contact': primary.contact_value if primary else NOT_AVAILABLE,
        'active_contact_count': len(contacts),
        'active_contacts': [format_contact(c) for c in contacts],
        'user_name': customer.creator.name if customer.creator else 'Initial',
        'created_at': iso(customer.created_at),
    }


def format_vehicle(vehicle):
    return {
        'id': vehicle.id,
        'vehicle_no': vehicle.vehicle_no,
        'license_plate': vehicle.license_plate,
        'vin': vehicle.vin,
        'year': vehicle.year,
        'color': vehicle.color,
        'engine_cc': vehicle.engine_cc,
        'make': vehicle.maker.name if vehicle.maker else NOT_AVAILABLE,
        'model': vehicle.model.name if vehicle.model else NOT_AVAILABLE,
        'vehicle_class': vehicle.vehicle_class.name if vehicle.vehicle_class else NOT_AVAILABLE,
        'status_id': vehicle.current_status_id,
        'status_name': vehicle.status.status_name if vehicle.status else NOT_AVAILABLE,
        'is_rentable': bool(vehicle.status and vehicle.status.is_rentable),
        'current_rental_id': vehicle.current_rental_id,
        'current_location': vehicle.current_location,
        'compensation_price': vehicle.compensation_price,
        'daily_rental_price': vehicle.daily_rental_price,
        'weekly_rental_price': vehicle.weekly_rental_price,
        'monthly_rental_price': vehicle.monthly_rental_price,
        'notes': vehicle.notes,
    }


def _options(query, label):
    return [{'id': row.id, 'name': getattr(row, label)} for row in query]


# ---------------- PAGE PROPS ----------------
def _current_rentals():
    return (Rental.current()
            .options(joinedload(Rental.vehicle), joinedload(Rental.customer),
                     joinedload(Rental.incharger), joinedload(Rental.creator))
            .order_by(Rental.end_date)
            .all())


def _lookups():
    return {
        'vehicleStatuses': defer(lambda: _options(VehicleStatus.live().order_by(VehicleStatus.status_name),
                                                  'status_name')),
        'depositTypes': defer(lambda: _options(
            DepositType.live().filter_by(is_active=True).order_by(DepositType.name), 'name')),
        'users': defer(lambda: _options(User.query.order_by(User.name), 'name')),
        'customers': defer(lambda: _options(Customer.live().order_by(Customer.last_name), 'full_name')),
        'availableVehicles': defer(lambda: [format_vehicle(v) for v in Vehicle.available().order_by(Vehicle.vehicle_no)]),
    }


def rentals_index_props(now):
    def totals():
        return deposit_totals(Deposit.query.filter_by(is_active=True).all())

    props = {
        'rentals': defer(lambda: [format_rental(r, now) for r in _current_rentals()]),
        'depositTotals': defer(totals),
        'overdueRentalsCount': defer(lambda: Rental.overdue(now.date()).count()),
    }
    props.update(_lookups())
    return props


def pos_index_props(now):
    props = {
        'vehicles': [format_vehicle(v) for v in Vehicle.live().order_by(Vehicle.vehicle_no)],
        'rentals': defer(lambda: [format_rental(r, now) for r in _current_rentals()]),
        'contactTypes': defer(lambda: _options(
            ContactType.live().filter_by(is_active=True).order_by(ContactType.name), 'name')),
        'chartOfAccounts': defer(lambda: [
            {'id': a.id, 'name': a.name, 'type': a.type.value}
            for a in ChartOfAccount.query.order_by(ChartOfAccount.name)
        ]),
    }
    props.update(_lookups())
    return props


def customers_index_props():
    return {
        'customers': defer(lambda: [format_customer(c) for c in Customer.live().order_by(Customer.last_name)]),
        'contactTypes': defer(lambda: _options(
            ContactType.live().filter_by(is_active=True).order_by(ContactType.name), 'name')),
    }


def vehicles_index_props():
    return {
        'vehicles': defer(lambda: [format_vehicle(v) for v in Vehicle.live().order_by(Vehicle.vehicle_no)]),
        'vehicleStatuses': defer(lambda: _options(VehicleStatus.live().order_by(VehicleStatus.status_name),
                                                  'status_name')),
        'makers': defer(lambda: _options(VehicleMaker.live().order_by(VehicleMaker.name), 'name')),
        'models': defer(lambda: _options(VehicleModel.live().order_by(VehicleModel.name), 'name')),
        'classes': defer(lambda: _options(VehicleClass.live().order_by(VehicleClass.name), 'name')),
    }


def stock_by_class():
    """Rentable-and-free vehicles against rented ones, per vehicle class."""
    rows = []
    for vehicle_class in VehicleClass.live().order_by(VehicleClass.name):
        vehicles = Vehicle.live().filter(Vehicle.vehicle_class_id == vehicle_class.id)
        rows.append({
            'id': vehicle_class.id,
            'name': vehicle_class.name,
            'total': vehicles.count(),
            'rented': vehicles.filter(Vehicle.current_rental_id.isnot(None)).count(),
            'available': Vehicle.available().filter(Vehicle.vehicle_class_id == vehicle_class.id).count(),
        })
    return rows


def _fleet_size(vehicles, day):
    """Vehicles registered by ``day`` and not deleted before it."""
    return sum(1 for v in vehicles
               if v.created_at is not None and v.created_at.date() <= day
               and (v.deleted_at is None or v.deleted_at.date() > day))


def rented_history(today, days):
    """Per-day count of vehicles out on rent, archived rental versions included.

    Vehicles and rental spans are loaded once for the whole window; each day is
    then counted against the fleet size on that day.
    """
    classes = VehicleClass.live().order_by(VehicleClass.name).all()
    first_day = today - timedelta(days=days - 1)
    vehicles = Vehicle.query.with_entities(
        Vehicle.id, Vehicle.vehicle_class_id, Vehicle.created_at, Vehicle.deleted_at).all()
    class_of = {v.id: v.vehicle_class_id for v in vehicles}
    spans = (db.session.query(Rental.vehicle_id, Rental.start_date, Rental.end_date, Rental.actual_return_date)
             .filter(Rental.start_date <= today, Rental.end_date >= first_day)
             .all())

    history = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        fleet = _fleet_size(vehicles, day)
        rented = {
            vehicle_id for vehicle_id, start, end, returned in spans
            if start <= day <= end and (returned is None or returned.date() >= day)
        }
        per_class = Counter(class_of.get(vehicle_id) for vehicle_id in rented)
        entry = {'date_key': day.isoformat(), 'label': day.strftime("%b %d, '%y"), 'totalFleet': fleet}
        counted = 0
        for vehicle_class in classes:
            count = per_class.get(vehicle_class.id, 0)
            entry[f"totalClass{vehicle_class.name.replace(' ', '')}"] = count
            counted += count
        entry['totalRented'] = counted
        entry['totalStock'] = fleet - counted
        history.append(entry)
    logger.debug(f"Built rented history for {len(history)} day(s)")
    return {'chartData': history, 'vehicleClasses': [{'id': c.id, 'name': c.name} for c in classes]}


def dashboard_props(now, history_days):
    deposits = Deposit.query.filter_by(is_active=True).all()
    return {
        'counts': {
            'activeRentals': Rental.current().count(),
            'overdueRentals': Rental.overdue(now.date()).count(),
            'customers': Customer.live().count(),
            'vehicles': Vehicle.live().count(),
            'availableVehicles': Vehicle.available().count(),
        },
        'depositTotals': deposit_totals(deposits),
        'stockByClass': defer(stock_by_class),
        'rentedHistory': defer(lambda: rented_history(now.date(), history_days)),
    }


def contract_view(rental, now):
    """Formatted rental plus the vehicle and customer details printed on the contract."""
    view = format_rental(rental, now)
    vehicle = rental.vehicle
    customer = rental.customer
    view.update({
        'vehicle_make': vehicle.maker.name if vehicle and vehicle.maker else NOT_AVAILABLE,
        'vehicle_model': vehicle.model.name if vehicle and vehicle.model else NOT_AVAILABLE,
        'vehicle_class': vehicle.vehicle_class.name if vehicle and vehicle.vehicle_class else NOT_AVAILABLE,
        'license_plate': (vehicle.license_plate or NOT_AVAILABLE) if vehicle else NOT_AVAILABLE,
        'compensation_price': vehicle.compensation_price if vehicle else None,
        'gender': (customer.gender or NOT_AVAILABLE) if customer else NOT_AVAILABLE,
        'nationality': (customer.nationality or NOT_AVAILABLE) if customer else NOT_AVAILABLE,
        'address': (customer.full_address or NOT_AVAILABLE) if customer else NOT_AVAILABLE,
        'passport_number': (customer.passport_number or NOT_AVAILABLE) if customer else NOT_AVAILABLE,
    })
    return view


def customer_detail(customer):
    """One customer with address parts, active deposits and visas, for the detail API."""
    view = format_customer(customer)
    deposits = list(customer.active_deposits)
    primary = pick_primary(deposits)
    view.update({
        'address_line_1': customer.address_line_1 or NOT_AVAILABLE,
        'address_line_2': customer.address_line_2 or NOT_AVAILABLE,
        'commune': customer.commune or NOT_AVAILABLE,
        'district': customer.district or NOT_AVAILABLE,
        'city': customer.city or NOT_AVAILABLE,
        'primary_deposit_type': primary.deposit_type.name if primary and primary.deposit_type else NOT_AVAILABLE,
        'primary_deposit': primary.deposit_value if primary else NOT_AVAILABLE,
        'active_deposits': [format_deposit(d) for d in deposits],
        'visas': [format_visa(v) for v in customer.visas if not v.is_deleted],
    })
    return view


# ---------------- VISAS ----------------
def format_visa(visa, today=None):
    days_left = (visa.expiration_date - today).days if today else None
    return {
        'id': visa.id,
        'customer_id': visa.customer_id,
        'full_name': visa.customer.full_name if visa.customer else NOT_AVAILABLE,
        'passport_number': visa.passport_number or NOT_AVAILABLE,
        'visa_type': visa.visa_type,
        'expiration_date': iso(visa.expiration_date),
        'days_until_expiry': days_left,
        'is_expired': days_left is not None and days_left < 0,
        'notes': visa.notes or NOT_AVAILABLE,
        'incharger_name': visa.incharger.name if visa.incharger else 'Initial',
        'user_name': visa.creator.name if visa.creator else 'Initial',
        'created_at': iso(visa.created_at),
    }


def visa_index_props(today):
    return {
        'visas': defer(lambda: [format_visa(v, today)
                                for v in Visa.live().order_by(Visa.expiration_date, Visa.id)]),
        'customers': defer(lambda: _options(Customer.live().order_by(Customer.last_name), 'full_name')),
        'users': defer(lambda: _options(User.query.order_by(User.name), 'name')),
    }


# ---------------- REPORTS ----------------
def rental_full_details_props(rental, now):
    """Every rental version of the rental's customer, archived ones included, newest first."""
    def history():
        rentals = (Rental.query
                   .filter(Rental.customer_id == rental.customer_id)
                   .options(joinedload(Rental.vehicle), joinedload(Rental.incharger), joinedload(Rental.creator))
                   .order_by(Rental.id.desc())
                   .all())
        views = []
        for version in rentals:
            view = format_rental(version, now)
            view['deposits'] = [format_deposit(d) for d in version.deposits]
            views.append(view)
        return views

    props = {'rentalId': rental.id, 'rentals': defer(history)}
    props.update(_lookups())
    return props


def _percent(part, whole):
    return round(part / whole * 100, 2) if whole else 0


def vehicle_class_counts(vehicles=None):
    """Vehicles per class with a per-status breakdown and percentages."""
    if vehicles is None:
        vehicles = Vehicle.live().options(joinedload(Vehicle.status)).all()
    total = len(vehicles)
    breakdown = {}
    for vehicle_class in VehicleClass.live().order_by(VehicleClass.name):
        in_class = [v for v in vehicles if v.vehicle_class_id == vehicle_class.id]
        statuses = Counter(v.status.status_name for v in in_class if v.status)
        breakdown[vehicle_class.name] = {
            'totalVehiclesInClass': len(in_class),
            'classPercentageOfTotal': _percent(len(in_class), total),
            'statusBreakdown': [
                {'statusName': name, 'count': count, 'percentageInClass': _percent(count, len(in_class))}
                for name, count in sorted(statuses.items())
            ],
        }
    return breakdown


def vehicle_report_data():
    vehicles = Vehicle.live().options(joinedload(Vehicle.status)).all()
    per_status = Counter(v.current_status_id for v in vehicles)
    overall = [
        {'statusName': status.status_name,
         'count': per_status.get(status.id, 0),
         'percentageOfTotal': _percent(per_status.get(status.id, 0), len(vehicles))}
        for status in VehicleStatus.live().order_by(VehicleStatus.status_name)
    ]
    return {'classBreakdown': vehicle_class_counts(vehicles), 'overallStatusPercentages': overall}


def rental_transactions_props(day, now):
    """Rental versions recorded on ``day``, archived ones included, with counts per transition."""
    start = datetime.combine(day, time.min)
    recorded_on_day = Rental.query.filter(Rental.created_at >= start,
                                          Rental.created_at < start + timedelta(days=1))

    def rentals():
        return [format_rental(r, now) for r in recorded_on_day.order_by(Rental.id.desc())]

    def counts():
        rows = (recorded_on_day.with_entities(Rental.status, db.func.count(Rental.id))
                .group_by(Rental.status).all())
        return {status: total for status, total in rows}

    return {
        'date': day.isoformat(),
        'rentals': defer(rentals),
        'transactionCounts': defer(counts),
        'totalTransactionCounts': defer(recorded_on_day.count),
        'vehicleClassCounts': defer(vehicle_class_counts),
        'vehicleReportData': defer(vehicle_report_data),
    }
