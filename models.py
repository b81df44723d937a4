# ---------------- IMPORTS ----------------
# Table definitions for the rental admin database
import enum
from datetime import datetime, timezone

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy

# Initialize the database object
db = SQLAlchemy()


def utcnow():
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------- MIXINS ----------------
class SoftDeleteMixin:
    """Rows are hidden by stamping ``deleted_at`` instead of being removed."""
    deleted_at = db.Column(db.DateTime, nullable=True, index=True)  # Soft-delete marker

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def soft_delete(self, when=None):
        self.deleted_at = when or utcnow()

    @classmethod
    def live(cls):
        return cls.query.filter(cls.deleted_at.is_(None))


class ReplicableMixin:
    """Copy a row into a new unsaved instance, the way archival snapshots are taken."""
    _not_replicated = ('id', 'created_at', 'updated_at', 'deleted_at', 'version')

    def replicate(self, **overrides):
        values = {
            attr.key: getattr(self, attr.key)
            for attr in self.__mapper__.column_attrs
            if attr.key not in self._not_replicated
        }
        values.update(overrides)
        return type(self)(**values)


# ---------------- USERS, ROLES, PERMISSIONS ----------------
user_roles = db.Table(
    'user_roles',
    db.Column('user_id', db.Integer, db.ForeignKey('user.id'), primary_key=True),
    db.Column('role_id', db.Integer, db.ForeignKey('role.id'), primary_key=True),
)

role_permissions = db.Table(
    'role_permissions',
    db.Column('role_id', db.Integer, db.ForeignKey('role.id'), primary_key=True),
    db.Column('permission_id', db.Integer, db.ForeignKey('permission.id'), primary_key=True),
)


class Permission(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)  # e.g. rental-create


class Role(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))  # Who created the role
    created_at = db.Column(db.DateTime, default=utcnow)

    permissions = db.relationship('Permission', secondary=role_permissions, backref='roles')
    creator = db.relationship('User', foreign_keys=[user_id])


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)  # Unique user ID
    name = db.Column(db.String(100), unique=True, nullable=False)  # Display name, also used as incharger label
    email = db.Column(db.String(100), unique=True, nullable=False)
    password = db.Column(db.String(200), nullable=False)  # Hashed password
    is_admin = db.Column(db.Boolean, default=False)  # Superuser, bypasses permission checks
    created_at = db.Column(db.DateTime, default=utcnow)

    roles = db.relationship('Role', secondary=user_roles, backref='users')

    def can(self, permission):
        if self.is_admin:
            return True
        return any(p.name == permission for role in self.roles for p in role.permissions)

    def __repr__(self):
        return f"<User {self.name}>"


# ---------------- LOOKUP TABLES ----------------
class VehicleStatus(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    status_name = db.Column(db.String(100), unique=True, nullable=False)  # In Stock, On Rent, ...
    description = db.Column(db.Text)
    is_rentable = db.Column(db.Boolean, default=False)  # Vehicles in this status can be rented out
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)


class VehicleMaker(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)


class VehicleModel(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    vehicle_make_id = db.Column(db.Integer, db.ForeignKey('vehicle_maker.id'))
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    maker = db.relationship('VehicleMaker', backref='models')


class VehicleClass(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)  # e.g. Big AT, 50cc AT, MT
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)


class DepositType(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)  # Passport, Money, ...
    is_active = db.Column(db.Boolean, default=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)


class ContactType(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)  # Mobile Phone, Email, ...
    is_active = db.Column(db.Boolean, default=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)


# ---------------- CUSTOMER TABLE ----------------
class Customer(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False, index=True)
    date_of_birth = db.Column(db.Date)
    gender = db.Column(db.String(20))
    nationality = db.Column(db.String(100))
    address_line_1 = db.Column(db.String(255))
    address_line_2 = db.Column(db.String(255))
    commune = db.Column(db.String(100))
    district = db.Column(db.String(100))
    city = db.Column(db.String(100))
    passport_number = db.Column(db.String(100))
    passport_expiry = db.Column(db.Date)
    occupation = db.Column(db.String(100))
    notes = db.Column(db.Text)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))  # Who registered the customer
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    creator = db.relationship('User', foreign_keys=[user_id])
    contacts = db.relationship('Contact', back_populates='customer', order_by='Contact.id')
    active_contacts = db.relationship(
        'Contact',
        primaryjoin='and_(Customer.id == Contact.customer_id, Contact.is_active.is_(True))',
        order_by='Contact.id',
        viewonly=True,
    )
    active_deposits = db.relationship(
        'Deposit',
        primaryjoin='and_(Customer.id == Deposit.customer_id, Deposit.is_active.is_(True))',
        order_by='Deposit.id',
        viewonly=True,
    )

    @property
    def full_name(self):
        return ' '.join(part for part in (self.first_name, self.last_name) if part).strip()

    @property
    def full_address(self):
        parts = (self.address_line_1, self.address_line_2, self.commune, self.district, self.city)
        return ' '.join(part for part in parts if part).strip()

    def __repr__(self):
        return f"<Customer {self.full_name}>"


# ---------------- CONTACT TABLE ----------------
class Contact(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False, index=True)
    contact_type_id = db.Column(db.Integer, db.ForeignKey('contact_type.id'), nullable=False)
    contact_value = db.Column(db.String(255), nullable=False)  # Phone number, email address, handle
    description = db.Column(db.String(255))
    is_primary = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True, index=True)
    start_date = db.Column(db.DateTime)  # When the contact became active
    end_date = db.Column(db.DateTime)  # When it became inactive
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    customer = db.relationship('Customer', back_populates='contacts')
    contact_type = db.relationship('ContactType')


# ---------------- VEHICLE TABLE ----------------
class Vehicle(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    vehicle_no = db.Column(db.String(50), unique=True, nullable=False)  # Business key painted on the vehicle
    license_plate = db.Column(db.String(50))
    vin = db.Column(db.String(100))
    year = db.Column(db.Integer)
    color = db.Column(db.String(50))
    engine_cc = db.Column(db.Integer)
    vehicle_make_id = db.Column(db.Integer, db.ForeignKey('vehicle_maker.id'))
    vehicle_model_id = db.Column(db.Integer, db.ForeignKey('vehicle_model.id'))
    vehicle_class_id = db.Column(db.Integer, db.ForeignKey('vehicle_class.id'))
    compensation_price = db.Column(db.Numeric(10, 2))  # Charged if the vehicle is lost
    purchase_price = db.Column(db.Numeric(10, 2))
    purchase_date = db.Column(db.Date)
    daily_rental_price = db.Column(db.Numeric(10, 2))
    weekly_rental_price = db.Column(db.Numeric(10, 2))
    monthly_rental_price = db.Column(db.Numeric(10, 2))
    current_status_id = db.Column(db.Integer, db.ForeignKey('vehicle_status.id'))
    # Weak reference to the active rental; no foreign key so archival can move it freely
    current_rental_id = db.Column(db.Integer, index=True)
    current_location = db.Column(db.String(100))
    notes = db.Column(db.Text)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))  # Last user to change the vehicle
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {'version_id_col': version}

    status = db.relationship('VehicleStatus')
    maker = db.relationship('VehicleMaker')
    model = db.relationship('VehicleModel')
    vehicle_class = db.relationship('VehicleClass', backref='vehicles')
    rentals = db.relationship('Rental', back_populates='vehicle')
    current_rental = db.relationship(
        'Rental',
        primaryjoin='foreign(Vehicle.current_rental_id) == Rental.id',
        viewonly=True,
    )

    @classmethod
    def available(cls):
        """Vehicles that can be handed to a customer right now."""
        return (cls.live()
                .join(VehicleStatus, cls.current_status_id == VehicleStatus.id)
                .filter(VehicleStatus.is_rentable.is_(True), cls.current_rental_id.is_(None)))

    @classmethod
    def unavailable(cls):
        return (cls.live()
                .outerjoin(VehicleStatus, cls.current_status_id == VehicleStatus.id)
                .filter(db.or_(VehicleStatus.is_rentable.is_(False),
                               VehicleStatus.id.is_(None),
                               cls.current_rental_id.isnot(None))))

    def __repr__(self):
        return f"<Vehicle {self.vehicle_no}>"


# ---------------- RENTAL TABLE ----------------
class Rental(SoftDeleteMixin, ReplicableMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    vehicle_id = db.Column(db.Integer, db.ForeignKey('vehicle.id'), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False, index=True)
    incharger_id = db.Column(db.Integer, db.ForeignKey('user.id'))  # Staff member handling this version
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))  # Who recorded this version
    start_date = db.Column(db.Date, nullable=False)
    actual_start_date = db.Column(db.Date)
    end_date = db.Column(db.Date, nullable=False, index=True)
    coming_date = db.Column(db.Date)  # Date the customer promised to come back
    actual_return_date = db.Column(db.DateTime)
    period = db.Column(db.String(50))  # Free text, e.g. "7 days" or "1 month"
    total_cost = db.Column(db.Numeric(10, 2))
    status = db.Column(db.String(50), index=True)  # Free-text label of the transition that produced this row
    notes = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True)
    is_latest_version = db.Column(db.Boolean, default=True)
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {'version_id_col': version}

    vehicle = db.relationship('Vehicle', back_populates='rentals')
    customer = db.relationship('Customer', backref='rentals')
    incharger = db.relationship('User', foreign_keys=[incharger_id])
    creator = db.relationship('User', foreign_keys=[user_id])
    deposits = db.relationship('Deposit', back_populates='rental', order_by='Deposit.id')
    active_deposits = db.relationship(
        'Deposit',
        primaryjoin='and_(Rental.id == Deposit.rental_id, Deposit.is_active.is_(True))',
        order_by='Deposit.id',
        viewonly=True,
    )

    @classmethod
    def current(cls):
        """Live rentals that are still the active version."""
        return cls.live().filter(cls.is_active.is_(True))

    @classmethod
    def overdue(cls, today):
        return cls.current().filter(cls.actual_return_date.is_(None), cls.end_date < today)

    def __repr__(self):
        return f"<Rental {self.id} vehicle={self.vehicle_id} status={self.status}>"


# ---------------- DEPOSIT TABLE ----------------
class Deposit(ReplicableMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False, index=True)
    rental_id = db.Column(db.Integer, db.ForeignKey('rental.id'), nullable=False, index=True)
    type_id = db.Column(db.Integer, db.ForeignKey('deposit_type.id'), nullable=False, index=True)
    deposit_value = db.Column(db.String(255), nullable=False)  # Cash amount or document identifier
    registered_number = db.Column(db.String(100))  # Document number, e.g. passport no.
    expiry_date = db.Column(db.Date)
    description = db.Column(db.Text)
    is_primary = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True, index=True)
    start_date = db.Column(db.DateTime)
    end_date = db.Column(db.DateTime)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    rental = db.relationship('Rental', back_populates='deposits')
    deposit_type = db.relationship('DepositType')
    customer = db.relationship('Customer')


# ---------------- VISA TABLE ----------------
class Visa(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False, index=True)
    passport_number = db.Column(db.String(100))
    visa_type = db.Column(db.String(100), nullable=False)  # e.g. Tourist, Business, Retirement
    expiration_date = db.Column(db.Date, nullable=False)
    incharger_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)  # Staff member handling the visa
    notes = db.Column(db.Text)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))  # Who registered it
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    customer = db.relationship('Customer', backref='visas')
    incharger = db.relationship('User', foreign_keys=[incharger_id])
    creator = db.relationship('User', foreign_keys=[user_id])


# ---------------- ACCOUNTING TABLES ----------------
class AccountType(enum.Enum):
    ASSET = 'Asset'
    LIABILITY = 'Liability'
    EQUITY = 'Equity'
    REVENUE = 'Revenue'
    EXPENSE = 'Expense'


class ChartOfAccount(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), unique=True, nullable=False)
    type = db.Column(db.Enum(AccountType), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)


class Vendor(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), unique=True, nullable=False)
    email = db.Column(db.String(150))
    phone = db.Column(db.String(50))
    address = db.Column(db.String(255))
    notes = db.Column(db.Text)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)


class Sale(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    sale_no = db.Column(db.String(20), unique=True, nullable=False)  # SALE-0001
    sale_date = db.Column(db.Date, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False)
    rental_id = db.Column(db.Integer, db.ForeignKey('rental.id'))
    item_description = db.Column(db.String(255), nullable=False)
    memo_ref_no = db.Column(db.String(255))
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    payment_type = db.Column(db.String(10), nullable=False)  # cash, bank or credit
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    customer = db.relationship('Customer')


class Expense(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    expense_no = db.Column(db.String(20), unique=True, nullable=False)  # EXP-0001
    expense_date = db.Column(db.Date, nullable=False)
    vendor_id = db.Column(db.Integer, db.ForeignKey('vendor.id'), nullable=False)
    item_description = db.Column(db.String(255), nullable=False)
    memo_ref_no = db.Column(db.String(255))
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    payment_type = db.Column(db.String(10), nullable=False)  # cash or bank
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    vendor = db.relationship('Vendor')


class LedgerTransaction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    transaction_no = db.Column(db.String(20), unique=True, nullable=False)  # GL-001
    transaction_date = db.Column(db.Date, nullable=False, index=True)
    item_description = db.Column(db.Text, nullable=False)
    memo_ref_no = db.Column(db.String(255))
    debit_account_id = db.Column(db.Integer, db.ForeignKey('chart_of_account.id'), nullable=False)
    credit_account_id = db.Column(db.Integer, db.ForeignKey('chart_of_account.id'), nullable=False)
    amount = db.Column(db.Numeric(15, 2), nullable=False)
    sale_id = db.Column(db.Integer, db.ForeignKey('sale.id'), index=True)
    expense_id = db.Column(db.Integer, db.ForeignKey('expense.id'), index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    debit_account = db.relationship('ChartOfAccount', foreign_keys=[debit_account_id])
    credit_account = db.relationship('ChartOfAccount', foreign_keys=[credit_account_id])
    creator = db.relationship('User', foreign_keys=[user_id])
