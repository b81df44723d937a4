# ---------------- IMPORTS ----------------
# Starting data for a fresh database: permissions, roles, lookups, accounts and the admin user
import logging

from werkzeug.security import generate_password_hash

from models import (AccountType, ChartOfAccount, ContactType, DepositType, Permission, Role, User,
                    VehicleClass, VehicleMaker, VehicleStatus, db)

logger = logging.getLogger(__name__)

PERMISSION_AREAS = ('dashboard', 'pos', 'rental', 'vehicle', 'customer', 'user', 'role',
                    'accounting', 'settings', 'report', 'visa')
PERMISSION_ACTIONS = ('list', 'create', 'edit', 'delete')

# Front-desk staff: rent out vehicles, register customers and visas, no deletes outside rentals
CLERK_PERMISSIONS = (
    'dashboard-list', 'pos-list',
    'rental-list', 'rental-create', 'rental-edit', 'rental-delete',
    'customer-list', 'customer-create', 'customer-edit',
    'vehicle-list', 'report-list', 'visa-list', 'visa-create',
)

VEHICLE_STATUSES = (
    ('In Stock', 'Ready to rent', True),
    ('On Rent', 'With a customer', False),
    ('In Repair', 'At the workshop', False),
    ('Sold', 'No longer in the fleet', False),
)

VEHICLE_CLASSES = ('Big Auto', 'Auto', '50cc Auto', 'Manual')
VEHICLE_MAKERS = ('Honda', 'Yamaha', 'Suzuki')
DEPOSIT_TYPES = ('Passport', 'Money', 'Others')
CONTACT_TYPES = ('Mobile Phone', 'Email', 'Facebook', 'Telegram', 'WhatsApp', 'Others')

ACCOUNTS = (
    ('Cash', AccountType.ASSET),
    ('Bank Account (ABA)', AccountType.ASSET),
    ('Bank Account (ACLEDA)', AccountType.ASSET),
    ('Accounts Receivable', AccountType.ASSET),
    ('Accounts Payable', AccountType.LIABILITY),
    ('Customer Deposits Held', AccountType.LIABILITY),
    ("Owner's Equity", AccountType.EQUITY),
    ('AT Rental', AccountType.REVENUE),
    ('50cc AT Rental', AccountType.REVENUE),
    ('Big AT Rental', AccountType.REVENUE),
    ('MT Rental', AccountType.REVENUE),
    ('Helmet Income', AccountType.REVENUE),
    ('Repair Income', AccountType.REVENUE),
    ('Repairs & Maintenance', AccountType.EXPENSE),
    ('Fuel Expense', AccountType.EXPENSE),
    ('Rent Expense', AccountType.EXPENSE),
    ('Salaries Expense', AccountType.EXPENSE),
)


def _get_or_create(model, defaults=None, **lookup):
    record = model.query.filter_by(**lookup).first()
    if record is None:
        record = model(**lookup, **(defaults or {}))
        db.session.add(record)
    return record


def seed_admin(config):
    """Create the configured administrator, or make sure the existing one is still admin."""
    admin = User.query.filter_by(email=config['ADMIN_EMAIL']).first()
    if not admin:
        hashed_password = generate_password_hash(config['ADMIN_PASSWORD'], method='pbkdf2:sha256')
        admin = User(name=config['ADMIN_NAME'], email=config['ADMIN_EMAIL'], password=hashed_password, is_admin=True)
        db.session.add(admin)
        logger.info(f"Created administrator {config['ADMIN_EMAIL']}")
    else:
        admin.is_admin = True
    db.session.flush()
    return admin


def seed_permissions():
    return [
        _get_or_create(Permission, name=f"{area}-{action}")
        for area in PERMISSION_AREAS
        for action in PERMISSION_ACTIONS
    ]


def seed_roles(admin):
    permissions = seed_permissions()
    db.session.flush()
    admin_role = _get_or_create(Role, defaults={'user_id': admin.id}, name='Admin')
    admin_role.permissions = permissions
    clerk_role = _get_or_create(Role, defaults={'user_id': admin.id}, name='Clerk')
    clerk_role.permissions = [p for p in permissions if p.name in CLERK_PERMISSIONS]
    if admin_role not in admin.roles:
        admin.roles.append(admin_role)
    return admin_role, clerk_role


def seed_lookups(admin):
    for name, description, rentable in VEHICLE_STATUSES:
        _get_or_create(VehicleStatus, defaults={'description': description, 'is_rentable': rentable,
                                                'user_id': admin.id}, status_name=name)
    for name in VEHICLE_CLASSES:
        _get_or_create(VehicleClass, defaults={'user_id': admin.id}, name=name)
    for name in VEHICLE_MAKERS:
        _get_or_create(VehicleMaker, defaults={'user_id': admin.id}, name=name)
    for name in DEPOSIT_TYPES:
        _get_or_create(DepositType, defaults={'user_id': admin.id, 'is_active': True}, name=name)
    for name in CONTACT_TYPES:
        _get_or_create(ContactType, defaults={'user_id': admin.id, 'is_active': True}, name=name)
    for name, account_type in ACCOUNTS:
        _get_or_create(ChartOfAccount, defaults={'type': account_type}, name=name)


def seed_all(config):
    """Idempotent; safe to run against an already seeded database."""
    admin = seed_admin(config)
    seed_roles(admin)
    seed_lookups(admin)
    db.session.commit()
    logger.info('Database seeded')
    return admin
