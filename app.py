import logging
import os
from datetime import date, timedelta
from functools import wraps
from io import BytesIO
from urllib.parse import urljoin, urlparse

import click
from flask import Flask, abort, flash, jsonify, redirect, request, send_file, session, url_for
from flask_login import LoginManager, current_user, login_required, login_user, logout_user
from flask_wtf import CSRFProtect
from werkzeug.security import check_password_hash, generate_password_hash

import accounting
import lifecycle
import presenters
from contracts import contract_filename, render_contract_pdf
from errors import (AuthorizationError, EntityKind, NotFoundError, RentalAdminError, ValidationError,
                    find_or_fail, require, transaction)
from forms import (ComingDateForm, CustomerForm, ExchangeDepositForm, ExchangeVehicleForm, ExpenseForm,
                   ExtendRentalForm, JournalEntryForm, LoginForm, LookupForm, PasswordConfirmForm,
                   RegistrationForm, RentalForm, ReturnRentalForm, RoleForm, SaleForm, TemporaryReturnForm,
                   UserRolesForm, VehicleForm, VendorForm, VisaForm, flatten_errors, rows)
from models import (ChartOfAccount, Contact, ContactType, Customer, DepositType, Expense, LedgerTransaction,
                    Permission, Rental, Role, Sale, User, Vehicle, VehicleClass, VehicleMaker, VehicleModel,
                    VehicleStatus, Vendor, Visa, db, utcnow)
from pages import ERRORS_SESSION_KEY, render_page
from seeds import seed_all

app = Flask(__name__)
app.config.from_object(os.getenv('APP_CONFIG', 'config.Config'))
csrf = CSRFProtect(app)

logging.basicConfig(
    level=app.config['LOG_LEVEL'],
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

os.makedirs(app.instance_path, exist_ok=True)
db.init_app(app)

# Set up user login system
login_manager = LoginManager()
login_manager.init_app(app)
login_manager.login_view = 'login'


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


# Helper Functions
def acting_user():
    """The logged-in user as a plain model instance, passed explicitly to business code."""
    return current_user._get_current_object()


def permission_required(permission):
    """Decorator to check the current user holds a permission."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            require(acting_user(), permission)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def back(fallback='dashboard'):
    """Redirect to the referring page when it is on this site, otherwise to ``fallback``."""
    if request.referrer:
        target = urlparse(urljoin(request.host_url, request.referrer))
        if target.scheme in ('http', 'https') and target.netloc == request.host:
            return redirect(target.geturl())
    return redirect(url_for(fallback))


def validated(form):
    """Return the form when it validates, otherwise raise with a flat error map."""
    if not form.validate_on_submit():
        raise ValidationError(flatten_errors(form.errors))
    return form


def confirm_password(password):
    if not password or not check_password_hash(current_user.password, password):
        raise ValidationError({'password': 'The provided administrator password does not match.'})


def find_archived_or_fail(model, identifier, kind):
    """Like find_or_fail, but soft-deleted rows count; contracts are reprinted for old rentals too."""
    record = db.session.get(model, identifier)
    if record is None:
        raise NotFoundError(kind, identifier)
    return record


def date_arg(name, default):
    value = request.args.get(name)
    if not value:
        return default
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError({name: f"'{value}' is not a valid date."})


# Error Handlers
@app.errorhandler(ValidationError)
def handle_validation_error(e):
    session[ERRORS_SESSION_KEY] = e.errors
    flash(e.user_message, 'error')
    return back()


@app.errorhandler(AuthorizationError)
def handle_authorization_error(e):
    if request.method == 'GET':
        return render_page('errors/forbidden', message=e.user_message), 403
    flash(e.user_message, 'error')
    return back()


@app.errorhandler(RentalAdminError)
def handle_rental_admin_error(e):
    flash(e.user_message, 'error')
    return back()


# Authentication Routes
@app.route('/login', methods=['GET', 'POST'])
def login():
    """Staff login page."""
    form = LoginForm()
    if request.method == 'POST':
        validated(form)
        user = User.query.filter_by(email=form.email.data).first()
        if user and check_password_hash(user.password, form.password.data):
            login_user(user)
            logger.info(f"User [ID: {user.id}] logged in")
            flash('Logged in successfully!', 'success')
            return redirect(url_for('dashboard'))
        logger.warning(f"Failed login for {form.email.data}")
        flash('Invalid email or password.', 'error')
        return redirect(url_for('login'))
    return render_page('auth/login')


@app.route('/register', methods=['GET', 'POST'])
def register():
    """Create a staff account; roles are assigned afterwards by an admin."""
    form = RegistrationForm()
    if request.method == 'POST':
        validated(form)
        hashed_password = generate_password_hash(form.password.data, method='pbkdf2:sha256')
        new_user = User(name=form.name.data, email=form.email.data, password=hashed_password)
        db.session.add(new_user)
        db.session.commit()
        logger.info(f"User [ID: {new_user.id}] registered")
        flash('Account created successfully! Please log in.', 'success')
        return redirect(url_for('login'))
    return render_page('auth/register')


@app.route('/logout')
@login_required
def logout():
    logout_user()
    flash('Logged out successfully.', 'success')
    return redirect(url_for('login'))


# Dashboard Routes
@app.route('/')
@login_required
def home():
    return redirect(url_for('dashboard'))


@app.route('/dashboard')
@login_required
@permission_required('dashboard-list')
def dashboard():
    """Counts, deposit totals, stock per class and the rented history chart."""
    return render_page('dashboard', **presenters.dashboard_props(utcnow(), app.config['CHART_HISTORY_DAYS']))


@app.route('/api/dashboard/chart')
@login_required
@permission_required('dashboard-list')
def dashboard_chart():
    days = request.args.get('days', app.config['CHART_HISTORY_DAYS'], type=int)
    return jsonify(presenters.rented_history(utcnow().date(), max(1, min(days, 366))))


@app.route('/pos')
@login_required
@permission_required('pos-list')
def pos():
    """Point of sale: vehicles, customers and accounts for renting out."""
    return render_page('pos', **presenters.pos_index_props(utcnow()))


# Rental Routes
@app.route('/rentals')
@login_required
@permission_required('rental-list')
def rentals_index():
    return render_page('rentals/rentals-index', **presenters.rentals_index_props(utcnow()))


@app.route('/rentals', methods=['POST'])
@login_required
@permission_required('rental-create')
def rentals_store():
    """Rent a vehicle out."""
    form = validated(RentalForm())
    lifecycle.create_rental(
        acting_user(),
        vehicle_id=form.vehicle_id.data,
        customer_id=form.customer_id.data,
        incharger_id=form.incharger_id.data,
        status_id=form.status_id.data,
        start_date=form.start_date.data,
        end_date=form.end_date.data,
        period=form.period.data,
        total_cost=form.total_cost.data,
        notes=form.notes.data,
        deposits=rows(form.deposits),
        payments=rows(form.payments),
    )
    flash('Rental created successfully.', 'success')
    return back('rentals_index')


@app.route('/rentals/<int:rental_id>/coming-date', methods=['POST'])
@login_required
@permission_required('rental-edit')
def rentals_coming_date(rental_id):
    form = validated(ComingDateForm())
    lifecycle.add_coming_date(
        acting_user(), rental_id,
        incharger_id=form.incharger_id.data,
        coming_date=form.coming_date.data,
        status_id=form.status_id.data,
        notes=form.notes.data,
    )
    flash('Coming date added successfully.', 'success')
    return back('rentals_index')


@app.route('/rentals/<int:rental_id>/extend', methods=['POST'])
@login_required
@permission_required('rental-edit')
def rentals_extend(rental_id):
    form = validated(ExtendRentalForm())
    lifecycle.extend_rental(
        acting_user(), rental_id,
        incharger_id=form.incharger_id.data,
        start_date=form.start_date.data,
        end_date=form.end_date.data,
        coming_date=form.coming_date.data,
        period=form.period.data,
        notes=form.notes.data,
        payments=rows(form.payments),
    )
    flash('Rental extended successfully.', 'success')
    return back('rentals_index')


@app.route('/rentals/<int:rental_id>/temp-return', methods=['POST'])
@login_required
@permission_required('rental-delete')
def rentals_temporary_return(rental_id):
    form = validated(TemporaryReturnForm())
    lifecycle.temporary_return(
        acting_user(), rental_id,
        incharger_id=form.incharger_id.data,
        status_id=form.status_id.data,
        end_date=form.end_date.data,
        notes=form.notes.data,
    )
    flash('Vehicle temporarily returned.', 'success')
    return back('rentals_index')


@app.route('/rentals/<int:rental_id>/exchange-vehicle', methods=['POST'])
@login_required
@permission_required('rental-edit')
def rentals_exchange_vehicle(rental_id):
    form = validated(ExchangeVehicleForm())
    lifecycle.exchange_vehicle(
        acting_user(), rental_id,
        new_vehicle_id=form.new_vehicle_id.data,
        previous_status_id=form.previous_status_id.data,
        new_status_id=form.new_status_id.data,
        incharger_id=form.incharger_id.data,
        notes=form.notes.data,
    )
    flash('Vehicle exchanged successfully.', 'success')
    return back('rentals_index')


@app.route('/rentals/<int:rental_id>/exchange-deposit', methods=['POST'])
@login_required
@permission_required('rental-edit')
def rentals_exchange_deposit(rental_id):
    form = validated(ExchangeDepositForm())
    lifecycle.exchange_deposit(
        acting_user(), rental_id,
        incharger_id=form.incharger_id.data,
        notes=form.notes.data,
        deposits=rows(form.deposits),
    )
    flash('Deposits exchanged successfully.', 'success')
    return back('rentals_index')


@app.route('/rentals/<int:rental_id>/return', methods=['POST'])
@login_required
@permission_required('rental-delete')
def rentals_destroy(rental_id):
    """Return the vehicle and close the rental."""
    form = validated(ReturnRentalForm())
    lifecycle.return_rental(
        acting_user(), rental_id,
        password=form.password.data,
        status_id=form.status_id.data,
        incharger_id=form.incharger_id.data,
        notes=form.notes.data or None,
    )
    flash('Rental returned successfully.', 'success')
    return back('rentals_index')


@app.route('/rentals/<int:rental_id>/contract')
@login_required
@permission_required('rental-list')
def rentals_contract(rental_id):
    rental = find_archived_or_fail(Rental, rental_id, EntityKind.RENTAL)
    return render_page('rentals/contract', contract=presenters.contract_view(rental, utcnow()))


@app.route('/rentals/<int:rental_id>/contract.pdf')
@login_required
@permission_required('rental-list')
def rentals_contract_pdf(rental_id):
    """Stream the printable contract."""
    rental = find_archived_or_fail(Rental, rental_id, EntityKind.RENTAL)
    view = presenters.contract_view(rental, utcnow())
    pdf = render_contract_pdf(view, shop_name=app.config['SHOP_NAME'])
    logger.info(f"User [ID: {current_user.id}] downloaded contract for Rental [ID: {rental_id}]")
    return send_file(BytesIO(pdf), mimetype='application/pdf', as_attachment=True,
                     download_name=contract_filename(view))


# Customer Routes
CUSTOMER_FIELDS = ('first_name', 'last_name', 'date_of_birth', 'gender', 'nationality', 'address_line_1',
                   'address_line_2', 'commune', 'district', 'city', 'passport_number', 'passport_expiry',
                   'occupation', 'notes')


def apply_fields(record, form, fields):
    for field in fields:
        setattr(record, field, getattr(form, field).data)


def sync_contacts(customer, contact_rows, user, now):
    """Update submitted contacts, add new ones, deactivate the ones left out."""
    existing = {c.id: c for c in customer.contacts if c.is_active}
    seen_primary = False
    for row in contact_rows:
        contact_type = find_or_fail(ContactType, row['contact_type_id'], EntityKind.CONTACT_TYPE)
        contact = existing.pop(row['id'], None) if row.get('id') else None
        if contact is None:
            contact = Contact(customer_id=customer.id, is_active=True, start_date=now)
            db.session.add(contact)
        # At most one primary per customer
        is_primary = bool(row.get('is_primary')) and not seen_primary
        seen_primary = seen_primary or is_primary
        contact.contact_type_id = contact_type.id
        contact.contact_value = row['contact_value']
        contact.description = row.get('description')
        contact.is_primary = is_primary
        contact.user_id = user.id
    for contact in existing.values():
        contact.is_active = False
        contact.end_date = now
    return len(existing)


@app.route('/customers')
@login_required
@permission_required('customer-list')
def customers_index():
    return render_page('customers/customers-index', **presenters.customers_index_props())


@app.route('/customers', methods=['POST'])
@login_required
@permission_required('customer-create')
def customers_store():
    form = validated(CustomerForm())
    user = acting_user()
    with transaction('Create customer', user):
        customer = Customer(user_id=user.id)
        apply_fields(customer, form, CUSTOMER_FIELDS)
        db.session.add(customer)
        db.session.flush()
        sync_contacts(customer, rows(form.contacts), user, utcnow())
    logger.info(f"User [ID: {user.id}] created Customer [ID: {customer.id}]")
    flash('Customer created successfully.', 'success')
    return back('customers_index')


@app.route('/customers/<int:customer_id>/update', methods=['POST'])
@login_required
@permission_required('customer-edit')
def customers_update(customer_id):
    form = validated(CustomerForm())
    user = acting_user()
    with transaction('Update customer', user):
        customer = find_or_fail(Customer, customer_id, EntityKind.CUSTOMER)
        apply_fields(customer, form, CUSTOMER_FIELDS)
        closed = sync_contacts(customer, rows(form.contacts), user, utcnow())
    logger.info(f"User [ID: {user.id}] updated Customer [ID: {customer_id}], deactivated {closed} contact(s)")
    flash('Customer updated successfully.', 'success')
    return back('customers_index')


@app.route('/customers/<int:customer_id>/delete', methods=['POST'])
@login_required
@permission_required('customer-delete')
def customers_destroy(customer_id):
    form = validated(PasswordConfirmForm())
    confirm_password(form.password.data)
    user = acting_user()
    with transaction('Delete customer', user):
        customer = find_or_fail(Customer, customer_id, EntityKind.CUSTOMER)
        if Rental.current().filter_by(customer_id=customer.id).count():
            raise ValidationError({'customer_id': 'This customer still has an active rental.'})
        customer.soft_delete()
    logger.info(f"User [ID: {user.id}] deleted Customer [ID: {customer_id}]")
    flash('Customer deleted successfully.', 'success')
    return back('customers_index')


@app.route('/api/customers/<int:customer_id>')
@login_required
@permission_required('customer-list')
def customers_show(customer_id):
    """Customer detail with address, deposits and visas, for the rental and visa forms."""
    customer = db.session.get(Customer, customer_id)
    if customer is None or customer.is_deleted:
        return jsonify({'error': 'Customer not found.'}), 404
    return jsonify({'customer': presenters.customer_detail(customer)})


# Visa Routes
@app.route('/visa')
@login_required
@permission_required('visa-list')
def visa_index():
    return render_page('visa/visa-index', **presenters.visa_index_props(utcnow().date()))


@app.route('/visa/register', methods=['POST'])
@login_required
@permission_required('visa-create')
def visa_store():
    """Register a visa for an existing customer."""
    form = validated(VisaForm())
    errors = {}
    customer = db.session.get(Customer, form.customer_id.data)
    if customer is None or customer.is_deleted:
        errors['customer_id'] = 'The selected customer does not exist.'
    if db.session.get(User, form.incharger_id.data) is None:
        errors['incharger_id'] = 'The selected incharge user does not exist.'
    if errors:
        raise ValidationError(errors)

    user = acting_user()
    with transaction('Register visa', user):
        visa = Visa(
            customer_id=customer.id,
            passport_number=form.passport_number.data or customer.passport_number,
            visa_type=form.visa_type.data,
            expiration_date=form.expiration_date.data,
            incharger_id=form.incharger_id.data,
            notes=form.notes.data,
            user_id=user.id,
        )
        db.session.add(visa)
    logger.info(f"User [ID: {user.id}] registered Visa [ID: {visa.id}] for Customer [ID: {customer.id}]")
    flash('Visa registered successfully.', 'success')
    return back('visa_index')


# Vehicle Routes
VEHICLE_FIELDS = ('vehicle_no', 'license_plate', 'vin', 'year', 'color', 'engine_cc', 'vehicle_make_id',
                  'vehicle_model_id', 'vehicle_class_id', 'compensation_price', 'purchase_price',
                  'purchase_date', 'daily_rental_price', 'weekly_rental_price', 'monthly_rental_price',
                  'current_location', 'notes')


def check_vehicle_no(vehicle_no, vehicle_id=None):
    query = Vehicle.query.filter(Vehicle.vehicle_no == vehicle_no)
    if vehicle_id is not None:
        query = query.filter(Vehicle.id != vehicle_id)
    if query.first() is not None:
        raise ValidationError({'vehicle_no': 'This vehicle number is already in use.'})


@app.route('/vehicles')
@login_required
@permission_required('vehicle-list')
def vehicles_index():
    return render_page('vehicles/vehicles-index', **presenters.vehicles_index_props())


@app.route('/vehicles', methods=['POST'])
@login_required
@permission_required('vehicle-create')
def vehicles_store():
    form = validated(VehicleForm())
    check_vehicle_no(form.vehicle_no.data)
    user = acting_user()
    with transaction('Create vehicle', user):
        status = find_or_fail(VehicleStatus, form.current_status_id.data, EntityKind.VEHICLE_STATUS)
        vehicle = Vehicle(current_status_id=status.id, user_id=user.id)
        apply_fields(vehicle, form, VEHICLE_FIELDS)
        db.session.add(vehicle)
    logger.info(f"User [ID: {user.id}] created Vehicle [ID: {vehicle.id}] {vehicle.vehicle_no}")
    flash('Vehicle created successfully.', 'success')
    return back('vehicles_index')


@app.route('/vehicles/<int:vehicle_id>/update', methods=['POST'])
@login_required
@permission_required('vehicle-edit')
def vehicles_update(vehicle_id):
    form = validated(VehicleForm())
    check_vehicle_no(form.vehicle_no.data, vehicle_id)
    user = acting_user()
    with transaction('Update vehicle', user):
        vehicle = find_or_fail(Vehicle, vehicle_id, EntityKind.VEHICLE)
        status = find_or_fail(VehicleStatus, form.current_status_id.data, EntityKind.VEHICLE_STATUS)
        apply_fields(vehicle, form, VEHICLE_FIELDS)
        vehicle.current_status_id = status.id
        vehicle.user_id = user.id
    logger.info(f"User [ID: {user.id}] updated Vehicle [ID: {vehicle_id}]")
    flash('Vehicle updated successfully.', 'success')
    return back('vehicles_index')


@app.route('/vehicles/<int:vehicle_id>/delete', methods=['POST'])
@login_required
@permission_required('vehicle-delete')
def vehicles_destroy(vehicle_id):
    form = validated(PasswordConfirmForm())
    confirm_password(form.password.data)
    user = acting_user()
    with transaction('Delete vehicle', user):
        vehicle = find_or_fail(Vehicle, vehicle_id, EntityKind.VEHICLE)
        if vehicle.current_rental_id is not None:
            raise ValidationError({'vehicle_id': 'This vehicle is rented out and cannot be deleted.'})
        vehicle.soft_delete()
        vehicle.user_id = user.id
    logger.info(f"User [ID: {user.id}] deleted Vehicle [ID: {vehicle_id}]")
    flash('Vehicle deleted successfully.', 'success')
    return back('vehicles_index')


@app.route('/vehicles/<int:vehicle_id>/history')
@login_required
@permission_required('report-list')
def vehicles_history(vehicle_id):
    """Every archived version of the vehicle's rentals."""
    now = utcnow()
    history = lifecycle.rental_history(acting_user(), vehicle_id)
    vehicle = db.session.get(Vehicle, vehicle_id)
    return render_page(
        'vehicles/history',
        vehicle=presenters.format_vehicle(vehicle),
        rentals=[presenters.format_rental(r, now) for r in history],
    )


# Settings Routes
# kind -> (model, label column)
LOOKUPS = {
    'statuses': (VehicleStatus, 'status_name'),
    'makers': (VehicleMaker, 'name'),
    'models': (VehicleModel, 'name'),
    'classes': (VehicleClass, 'name'),
    'deposit-types': (DepositType, 'name'),
    'contact-types': (ContactType, 'name'),
}
LOOKUP_EXTRA_FIELDS = ('description', 'is_rentable', 'is_active', 'vehicle_make_id')
LOOKUP_FLAGS = ('is_rentable', 'is_active')


def lookup_model(kind):
    if kind not in LOOKUPS:
        abort(404)
    return LOOKUPS[kind]


def format_lookup(record, label):
    item = {'id': record.id, 'name': getattr(record, label)}
    for field in LOOKUP_EXTRA_FIELDS:
        if hasattr(record, field):
            item[field] = getattr(record, field)
    return item


def apply_lookup(record, form, label):
    setattr(record, label, form.name.data)
    for field in LOOKUP_EXTRA_FIELDS:
        if not hasattr(type(record), field):
            continue
        # Unchecked boxes are never posted; a flag only changes when it is sent
        if field in LOOKUP_FLAGS and field not in request.form:
            continue
        setattr(record, field, getattr(form, field).data)


def check_lookup_name(model, label, name, item_id=None):
    if not model.__table__.c[label].unique:
        return
    query = model.query.filter(getattr(model, label) == name)
    if item_id is not None:
        query = query.filter(model.id != item_id)
    if query.first() is not None:
        raise ValidationError({'name': f"'{name}' is already in use."})


@app.route('/settings/<kind>')
@login_required
@permission_required('settings-list')
def settings_index(kind):
    model, label = lookup_model(kind)
    items = model.live().order_by(getattr(model, label)).all()
    return render_page('settings/lookups', kind=kind, items=[format_lookup(i, label) for i in items])


@app.route('/settings/<kind>', methods=['POST'])
@login_required
@permission_required('settings-create')
def settings_store(kind):
    model, label = lookup_model(kind)
    form = validated(LookupForm())
    check_lookup_name(model, label, form.name.data)
    user = acting_user()
    with transaction(f"Create {kind}", user):
        record = model(user_id=user.id)
        apply_lookup(record, form, label)
        db.session.add(record)
    logger.info(f"User [ID: {user.id}] created {model.__name__} [ID: {record.id}]")
    flash('Setting created successfully.', 'success')
    return back()


@app.route('/settings/<kind>/<int:item_id>/update', methods=['POST'])
@login_required
@permission_required('settings-edit')
def settings_update(kind, item_id):
    model, label = lookup_model(kind)
    form = validated(LookupForm())
    check_lookup_name(model, label, form.name.data, item_id)
    user = acting_user()
    with transaction(f"Update {kind}", user):
        record = db.get_or_404(model, item_id)
        apply_lookup(record, form, label)
    logger.info(f"User [ID: {user.id}] updated {model.__name__} [ID: {item_id}]")
    flash('Setting updated successfully.', 'success')
    return back()


@app.route('/settings/<kind>/<int:item_id>/delete', methods=['POST'])
@login_required
@permission_required('settings-delete')
def settings_destroy(kind, item_id):
    model, label = lookup_model(kind)
    form = validated(PasswordConfirmForm())
    confirm_password(form.password.data)
    user = acting_user()
    with transaction(f"Delete {kind}", user):
        record = db.get_or_404(model, item_id)
        if model is VehicleStatus and Vehicle.live().filter_by(current_status_id=record.id).count():
            raise ValidationError({'status_id': 'Vehicles are still in this status.'})
        record.soft_delete()
    logger.info(f"User [ID: {user.id}] deleted {model.__name__} [ID: {item_id}]")
    flash('Setting deleted successfully.', 'success')
    return back()


# User and Role Routes
def format_user(user):
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email,
        'is_admin': bool(user.is_admin),
        'roles': [{'id': r.id, 'name': r.name} for r in user.roles],
    }


def format_role(role):
    return {
        'id': role.id,
        'name': role.name,
        'permissions': sorted(p.name for p in role.permissions),
        'creator': role.creator.name if role.creator else 'Initial',
    }


@app.route('/users')
@login_required
@permission_required('user-list')
def users_index():
    return render_page(
        'users/users-index',
        users=[format_user(u) for u in User.query.order_by(User.name)],
        roles=[format_role(r) for r in Role.query.order_by(Role.name)],
    )


@app.route('/users/<int:user_id>/roles', methods=['POST'])
@login_required
@permission_required('user-edit')
def users_update_roles(user_id):
    form = validated(UserRolesForm())
    actor = acting_user()
    with transaction('Update user roles', actor):
        user = db.get_or_404(User, user_id)
        user.roles = Role.query.filter(Role.id.in_(form.role_ids.data or [])).all()
    logger.info(f"User [ID: {actor.id}] set roles of User [ID: {user_id}] to {form.role_ids.data}")
    flash('User roles updated successfully.', 'success')
    return back('users_index')


@app.route('/users/<int:user_id>/delete', methods=['POST'])
@login_required
@permission_required('user-delete')
def users_destroy(user_id):
    form = validated(PasswordConfirmForm())
    confirm_password(form.password.data)
    actor = acting_user()
    if user_id == actor.id:
        raise ValidationError({'user_id': 'You cannot delete your own account.'})
    with transaction('Delete user', actor):
        user = db.get_or_404(User, user_id)
        user.roles = []
        db.session.delete(user)
    logger.info(f"User [ID: {actor.id}] deleted User [ID: {user_id}]")
    flash('User deleted successfully.', 'success')
    return back('users_index')


@app.route('/roles')
@login_required
@permission_required('role-list')
def roles_index():
    return render_page(
        'roles/roles-index',
        roles=[format_role(r) for r in Role.query.order_by(Role.name)],
        permissions=[{'id': p.id, 'name': p.name} for p in Permission.query.order_by(Permission.name)],
    )


def check_role_name(name, role_id=None):
    query = Role.query.filter(Role.name == name)
    if role_id is not None:
        query = query.filter(Role.id != role_id)
    if query.first() is not None:
        raise ValidationError({'name': 'A role with this name already exists.'})


@app.route('/roles', methods=['POST'])
@login_required
@permission_required('role-create')
def roles_store():
    form = validated(RoleForm())
    check_role_name(form.name.data)
    actor = acting_user()
    with transaction('Create role', actor):
        role = Role(name=form.name.data, user_id=actor.id)
        role.permissions = Permission.query.filter(Permission.id.in_(form.permission_ids.data or [])).all()
        db.session.add(role)
    logger.info(f"User [ID: {actor.id}] created Role [ID: {role.id}] {role.name}")
    flash('Role created successfully.', 'success')
    return back('roles_index')


@app.route('/roles/<int:role_id>/update', methods=['POST'])
@login_required
@permission_required('role-edit')
def roles_update(role_id):
    form = validated(RoleForm())
    check_role_name(form.name.data, role_id)
    actor = acting_user()
    with transaction('Update role', actor):
        role = db.get_or_404(Role, role_id)
        role.name = form.name.data
        role.permissions = Permission.query.filter(Permission.id.in_(form.permission_ids.data or [])).all()
    logger.info(f"User [ID: {actor.id}] updated Role [ID: {role_id}]")
    flash('Role updated successfully.', 'success')
    return back('roles_index')


@app.route('/roles/<int:role_id>/delete', methods=['POST'])
@login_required
@permission_required('role-delete')
def roles_destroy(role_id):
    form = validated(PasswordConfirmForm())
    confirm_password(form.password.data)
    actor = acting_user()
    with transaction('Delete role', actor):
        role = db.get_or_404(Role, role_id)
        role.permissions = []
        role.users = []
        db.session.delete(role)
    logger.info(f"User [ID: {actor.id}] deleted Role [ID: {role_id}]")
    flash('Role deleted successfully.', 'success')
    return back('roles_index')


# Accounting Routes
def format_entry(entry):
    return {
        'id': entry.id,
        'transaction_no': entry.transaction_no,
        'transaction_date': entry.transaction_date.isoformat(),
        'item_description': entry.item_description,
        'memo_ref_no': entry.memo_ref_no,
        'debit_account': entry.debit_account.name,
        'credit_account': entry.credit_account.name,
        'amount': entry.amount,
        'sale_id': entry.sale_id,
        'expense_id': entry.expense_id,
        'user_name': entry.creator.name if entry.creator else 'Initial',
    }


def account_options():
    return [{'id': a.id, 'name': a.name, 'type': a.type.value}
            for a in ChartOfAccount.query.order_by(ChartOfAccount.name)]


@app.route('/accounting/ledger')
@login_required
@permission_required('accounting-list')
def ledger_index():
    """General ledger, newest first."""
    entries = LedgerTransaction.query.order_by(LedgerTransaction.transaction_date.desc(),
                                               LedgerTransaction.id.desc()).all()
    return render_page('accounting/general-ledger', entries=[format_entry(e) for e in entries],
                       accounts=account_options())


@app.route('/accounting/ledger', methods=['POST'])
@login_required
@permission_required('accounting-create')
def ledger_store():
    form = validated(JournalEntryForm())
    actor = acting_user()
    with transaction('Post journal entry', actor):
        accounting.record_journal_entry(
            actor,
            transaction_date=form.transaction_date.data,
            item_description=form.item_description.data,
            debit_account_id=form.debit_account_id.data,
            credit_account_id=form.credit_account_id.data,
            amount=form.amount.data,
            memo_ref_no=form.memo_ref_no.data,
        )
    flash('Journal entry recorded successfully.', 'success')
    return back('ledger_index')


@app.route('/accounting/ledger/<int:entry_id>/delete', methods=['POST'])
@login_required
@permission_required('accounting-delete')
def ledger_destroy(entry_id):
    form = validated(PasswordConfirmForm())
    confirm_password(form.password.data)
    actor = acting_user()
    with transaction('Delete journal entry', actor):
        entry = db.get_or_404(LedgerTransaction, entry_id)
        if entry.sale_id or entry.expense_id:
            raise ValidationError({'entry_id': 'Entries posted by a sale or expense cannot be deleted.'})
        db.session.delete(entry)
    logger.info(f"User [ID: {actor.id}] deleted ledger entry [ID: {entry_id}]")
    flash('Journal entry deleted successfully.', 'success')
    return back('ledger_index')


@app.route('/accounting/sales')
@login_required
@permission_required('accounting-list')
def sales_index():
    sales = Sale.query.order_by(Sale.sale_date.desc(), Sale.id.desc()).all()
    return render_page(
        'accounting/sales-entry',
        sales=[{'id': s.id, 'sale_no': s.sale_no, 'sale_date': s.sale_date.isoformat(),
                'customer': s.customer.full_name, 'rental_id': s.rental_id,
                'item_description': s.item_description, 'memo_ref_no': s.memo_ref_no,
                'amount': s.amount, 'payment_type': s.payment_type} for s in sales],
        accounts=account_options(),
        customers=[{'id': c.id, 'name': c.full_name} for c in Customer.live().order_by(Customer.last_name)],
    )


@app.route('/accounting/sales', methods=['POST'])
@login_required
@permission_required('accounting-create')
def sales_store():
    form = validated(SaleForm())
    actor = acting_user()
    with transaction('Record sale', actor):
        accounting.record_sale(
            actor,
            customer_id=form.customer_id.data,
            sale_date=form.sale_date.data,
            item_description=form.item_description.data,
            amount=form.amount.data,
            payment_type=form.payment_type.data,
            credit_account_id=form.credit_account_id.data,
            debit_target_account_id=form.debit_target_account_id.data,
            memo_ref_no=form.memo_ref_no.data,
        )
    flash('Sale recorded successfully.', 'success')
    return back('sales_index')


@app.route('/accounting/vendors')
@login_required
@permission_required('accounting-list')
def vendors_index():
    vendors = Vendor.live().order_by(Vendor.name).all()
    return render_page('accounting/vendors', vendors=[
        {'id': v.id, 'name': v.name, 'email': v.email, 'phone': v.phone, 'address': v.address, 'notes': v.notes}
        for v in vendors
    ])


VENDOR_FIELDS = ('name', 'email', 'phone', 'address', 'notes')


def check_vendor_name(name, vendor_id=None):
    query = Vendor.query.filter(Vendor.name == name)
    if vendor_id is not None:
        query = query.filter(Vendor.id != vendor_id)
    if query.first() is not None:
        raise ValidationError({'name': 'A vendor with this name already exists.'})


@app.route('/accounting/vendors', methods=['POST'])
@login_required
@permission_required('accounting-create')
def vendors_store():
    form = validated(VendorForm())
    check_vendor_name(form.name.data)
    actor = acting_user()
    with transaction('Create vendor', actor):
        vendor = Vendor(user_id=actor.id)
        apply_fields(vendor, form, VENDOR_FIELDS)
        db.session.add(vendor)
    logger.info(f"User [ID: {actor.id}] created Vendor [ID: {vendor.id}]")
    flash('Vendor created successfully.', 'success')
    return back('vendors_index')


@app.route('/accounting/vendors/<int:vendor_id>/update', methods=['POST'])
@login_required
@permission_required('accounting-edit')
def vendors_update(vendor_id):
    form = validated(VendorForm())
    check_vendor_name(form.name.data, vendor_id)
    actor = acting_user()
    with transaction('Update vendor', actor):
        vendor = find_or_fail(Vendor, vendor_id, EntityKind.VENDOR)
        apply_fields(vendor, form, VENDOR_FIELDS)
    flash('Vendor updated successfully.', 'success')
    return back('vendors_index')


@app.route('/accounting/vendors/<int:vendor_id>/delete', methods=['POST'])
@login_required
@permission_required('accounting-delete')
def vendors_destroy(vendor_id):
    form = validated(PasswordConfirmForm())
    confirm_password(form.password.data)
    actor = acting_user()
    with transaction('Delete vendor', actor):
        find_or_fail(Vendor, vendor_id, EntityKind.VENDOR).soft_delete()
    logger.info(f"User [ID: {actor.id}] deleted Vendor [ID: {vendor_id}]")
    flash('Vendor deleted successfully.', 'success')
    return back('vendors_index')


@app.route('/accounting/expenses')
@login_required
@permission_required('accounting-list')
def expenses_index():
    expenses = Expense.query.order_by(Expense.expense_date.desc(), Expense.id.desc()).all()
    return render_page(
        'accounting/expenses',
        expenses=[{'id': e.id, 'expense_no': e.expense_no, 'expense_date': e.expense_date.isoformat(),
                   'vendor': e.vendor.name, 'item_description': e.item_description,
                   'memo_ref_no': e.memo_ref_no, 'amount': e.amount, 'payment_type': e.payment_type}
                  for e in expenses],
        accounts=account_options(),
        vendors=[{'id': v.id, 'name': v.name} for v in Vendor.live().order_by(Vendor.name)],
    )


@app.route('/accounting/expenses', methods=['POST'])
@login_required
@permission_required('accounting-create')
def expenses_store():
    form = validated(ExpenseForm())
    actor = acting_user()
    with transaction('Record expense', actor):
        accounting.record_expense(
            actor,
            vendor_id=form.vendor_id.data,
            expense_date=form.expense_date.data,
            item_description=form.item_description.data,
            amount=form.amount.data,
            payment_type=form.payment_type.data,
            expense_account_id=form.expense_account_id.data,
            credit_source_account_id=form.credit_source_account_id.data,
            memo_ref_no=form.memo_ref_no.data,
        )
    flash('Expense recorded successfully.', 'success')
    return back('expenses_index')


# Report Routes
@app.route('/accounting/reports/trial-balance')
@login_required
@permission_required('accounting-list')
def trial_balance():
    as_of = date_arg('as_of', utcnow().date())
    return render_page('accounting/trial-balance', report=accounting.trial_balance(as_of))


@app.route('/accounting/reports/profit-and-loss')
@login_required
@permission_required('accounting-list')
def profit_and_loss():
    today = utcnow().date()
    start = date_arg('start_date', today.replace(day=1))
    end = date_arg('end_date', today)
    if end < start:
        raise ValidationError({'end_date': 'The end date must be on or after the start date.'})
    return render_page('accounting/profit-and-loss', report=accounting.profit_and_loss(start, end))


@app.route('/accounting/reports/balance-sheet')
@login_required
@permission_required('accounting-list')
def balance_sheet():
    as_of = date_arg('as_of', utcnow().date())
    report = accounting.balance_sheet(as_of, app.config['RETAINED_EARNINGS_ACCOUNT'])
    return render_page('accounting/balance-sheet', report=report)


@app.route('/accounting/accounts/<int:account_id>/ledger')
@login_required
@permission_required('accounting-list')
def account_ledger(account_id):
    today = utcnow().date()
    start = date_arg('start_date', today - timedelta(days=30))
    end = date_arg('end_date', today)
    return render_page('accounting/account-ledger', report=accounting.account_ledger(account_id, start, end))


@app.route('/reports/rentals-transaction')
@login_required
@permission_required('rental-list')
def rentals_transaction_report():
    """Every rental version recorded on one day, returned and replaced ones included."""
    now = utcnow()
    day = date_arg('date', now.date())
    return render_page('reports/rentals/rentals-report-index', **presenters.rental_transactions_props(day, now))


@app.route('/reports/full-details/rentals/<int:rental_id>')
@login_required
@permission_required('rental-list')
def rentals_full_details(rental_id):
    rental = find_archived_or_fail(Rental, rental_id, EntityKind.RENTAL)
    return render_page('full-details/reports-rentals-index',
                       **presenters.rental_full_details_props(rental, utcnow()))


# Command Line
@app.cli.command('init-db')
def init_db_command():
    """Create the tables and seed lookups and the admin account."""
    db.create_all()
    seed_all(app.config)
    click.echo('Initialized the database.')


if __name__ == '__main__':
    with app.app_context():
        db.create_all()
        seed_all(app.config)

    app.run(debug=True)
