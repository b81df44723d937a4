"""
Shared pytest fixtures: an in-memory database seeded per test, users with
different permissions, and a small fleet ready to rent.
"""
import os
from datetime import datetime, timedelta

import pytest

os.environ['APP_CONFIG'] = 'config.TestingConfig'

from werkzeug.security import generate_password_hash  # noqa: E402

from app import app as flask_app  # noqa: E402
from lifecycle import create_rental  # noqa: E402
from models import (ChartOfAccount, Contact, ContactType, Customer, DepositType, Role, User,  # noqa: E402
                    Vehicle, VehicleClass, VehicleStatus, db)
from seeds import seed_all  # noqa: E402

NOW = datetime(2025, 6, 15, 10, 30)
TODAY = NOW.date()

ADMIN_PASSWORD = 'password123'
CLERK_PASSWORD = 'clerkpass'


@pytest.fixture
def app():
    """Fresh schema and seed data for every test."""
    with flask_app.app_context():
        db.create_all()
        seed_all(flask_app.config)
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def admin(app):
    return User.query.filter_by(email=app.config['ADMIN_EMAIL']).first()


def _make_user(name, email, password, role_name=None):
    user = User(name=name, email=email, password=generate_password_hash(password, method='pbkdf2:sha256'))
    if role_name:
        user.roles.append(Role.query.filter_by(name=role_name).first())
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def clerk(app):
    """Front-desk user: may rent and return, may not touch accounting or settings."""
    return _make_user('Clerk', 'clerk@test.com', CLERK_PASSWORD, 'Clerk')


@pytest.fixture
def viewer(app):
    """Logged-in user without any role."""
    return _make_user('Viewer', 'viewer@test.com', 'viewerpass')


@pytest.fixture
def statuses(app):
    return {s.status_name: s for s in VehicleStatus.query.all()}


@pytest.fixture
def deposit_types(app):
    return {t.name: t for t in DepositType.query.all()}


@pytest.fixture
def accounts(app):
    return {a.name: a for a in ChartOfAccount.query.all()}


@pytest.fixture
def make_vehicle(app, admin, statuses):
    def factory(vehicle_no, status='In Stock', vehicle_class='Auto'):
        vehicle = Vehicle(
            vehicle_no=vehicle_no,
            license_plate=f"PP-{vehicle_no}",
            current_status_id=statuses[status].id,
            vehicle_class_id=VehicleClass.query.filter_by(name=vehicle_class).first().id,
            compensation_price=1200,
            daily_rental_price=10,
            current_location='With shop',
            user_id=admin.id,
            created_at=NOW - timedelta(days=90),
        )
        db.session.add(vehicle)
        db.session.commit()
        return vehicle
    return factory


@pytest.fixture
def vehicle(make_vehicle):
    return make_vehicle('V001')


@pytest.fixture
def customer(app, admin):
    customer = Customer(first_name='Jane', last_name='Doe', gender='Female', nationality='Canadian',
                        address_line_1='12 River Rd', city='Phnom Penh', passport_number='X1234567',
                        user_id=admin.id)
    db.session.add(customer)
    db.session.flush()
    mobile = ContactType.query.filter_by(name='Mobile Phone').first()
    email = ContactType.query.filter_by(name='Email').first()
    db.session.add_all([
        Contact(customer_id=customer.id, contact_type_id=mobile.id, contact_value='+855 12 345 678',
                is_primary=False, is_active=True, user_id=admin.id),
        Contact(customer_id=customer.id, contact_type_id=email.id, contact_value='jane@example.com',
                is_primary=False, is_active=True, user_id=admin.id),
    ])
    db.session.commit()
    return customer


@pytest.fixture
def rent(admin, customer, statuses, deposit_types):
    """Create a rental through the lifecycle with sensible defaults."""
    def factory(vehicle, actor=None, **overrides):
        values = dict(
            vehicle_id=vehicle.id,
            customer_id=customer.id,
            incharger_id=admin.id,
            status_id=statuses['On Rent'].id,
            start_date=TODAY - timedelta(days=3),
            end_date=TODAY + timedelta(days=4),
            period='7 days',
            total_cost='70.00',
            notes='Helmet included',
            deposits=[
                {'type_id': deposit_types['Passport'].id, 'deposit_value': 'X1234567', 'is_primary': True},
                {'type_id': deposit_types['Money'].id, 'deposit_value': '100'},
            ],
            payments=[],
            now=NOW,
        )
        values.update(overrides)
        return create_rental(actor or admin, **values)
    return factory


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, email, password):
    return client.post('/login', data={'email': email, 'password': password})


@pytest.fixture
def admin_client(client, admin):
    login(client, admin.email, ADMIN_PASSWORD)
    return client


@pytest.fixture
def clerk_client(client, clerk):
    login(client, clerk.email, CLERK_PASSWORD)
    return client


