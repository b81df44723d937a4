# ---------------- IMPORTS ----------------
# Field-level rules for every form the admin screens submit
from flask_wtf import FlaskForm
from wtforms import (BooleanField, DateField, DecimalField, FieldList, Form, FormField, IntegerField,  # Form field types
                     PasswordField, SelectField, SelectMultipleField, StringField, SubmitField, TextAreaField)
from wtforms.validators import (DataRequired, Email, EqualTo, InputRequired, Length, NumberRange,  # Rules to check form inputs
                                Optional, ValidationError)

PAYMENT_CHOICES = [('cash', 'Cash'), ('bank', 'Bank'), ('credit', 'Credit')]
EXPENSE_PAYMENT_CHOICES = [('cash', 'Cash'), ('bank', 'Bank')]
GENDER_CHOICES = [('', '-'), ('Male', 'Male'), ('Female', 'Female'), ('Other', 'Other')]


def flatten_errors(errors, prefix=''):
    """Turn WTForms' nested errors into one ``field -> message`` map, e.g. ``deposits-0-deposit_value``."""
    flat = {}
    for name, value in errors.items():
        key = f"{prefix}{name if name is not None else 'form'}"
        if isinstance(value, dict):
            flat.update(flatten_errors(value, f"{key}-"))
        elif value and all(isinstance(item, str) for item in value):
            flat[key] = value[0]
        else:
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    flat.update(flatten_errors(item, f"{key}-{index}-"))
                elif item:
                    flat[f"{key}-{index}"] = item[0]
    return flat


def rows(field_list):
    """Plain dicts for each row of a FieldList of FormFields."""
    return [entry.data for entry in field_list]


# ---------------- AUTH FORMS ----------------
# Staff accounts; new accounts get no roles until an admin assigns them
class RegistrationForm(FlaskForm):
    name = StringField('Full Name', validators=[DataRequired(), Length(min=2, max=100)])  # Also shown as incharge name
    email = StringField('Email Address', validators=[DataRequired(), Email()])
    password = PasswordField('Password', validators=[DataRequired(), Length(min=6)])
    confirm_password = PasswordField('Confirm Password', validators=[DataRequired(), EqualTo('password')])  # Must match password
    submit = SubmitField('Create Account')

    def validate_email(self, email):
        from models import User  # Import here to avoid circular import
        if User.query.filter_by(email=email.data).first():
            raise ValidationError('Email is already registered.')

    def validate_name(self, name):
        from models import User
        if User.query.filter_by(name=name.data).first():
            raise ValidationError('Name is already taken.')


class LoginForm(FlaskForm):
    email = StringField('Email Address', validators=[DataRequired(), Email()])
    password = PasswordField('Password', validators=[DataRequired()])
    submit = SubmitField('Sign In')


class PasswordConfirmForm(FlaskForm):
    """Destructive actions ask for the admin password again."""
    password = PasswordField('Your Password', validators=[DataRequired()])


# ---------------- NESTED ROWS ----------------
# Plain Form subclasses: rows inside a FlaskForm carry no CSRF token of their own
class DepositRowForm(Form):
    type_id = IntegerField('Deposit Type', validators=[InputRequired()])
    deposit_value = StringField('Value', validators=[DataRequired(), Length(max=255)])  # Cash amount or document id
    registered_number = StringField('Registered Number', validators=[Optional(), Length(max=100)])
    expiry_date = DateField('Expiry Date', validators=[Optional()])
    description = TextAreaField('Description', validators=[Optional()])
    is_primary = BooleanField('Primary')


class PaymentRowForm(Form):
    description = StringField('Description', validators=[DataRequired(), Length(max=255)])
    amount = DecimalField('Amount', places=2, validators=[InputRequired(), NumberRange(min=0)])
    payment_type = SelectField('Payment Type', choices=PAYMENT_CHOICES, validators=[DataRequired()])
    credit_account_id = IntegerField('Income Account', validators=[InputRequired()])
    debit_target_account_id = IntegerField('Bank Account', validators=[Optional()])  # Bank or credit payments only
    memo_ref_no = StringField('Memo / Ref No.', validators=[Optional(), Length(max=255)])


class ContactRowForm(Form):
    id = IntegerField('Contact', validators=[Optional()])  # Existing contact being edited
    contact_type_id = IntegerField('Contact Type', validators=[InputRequired()])
    contact_value = StringField('Value', validators=[DataRequired(), Length(max=255)])
    description = StringField('Description', validators=[Optional(), Length(max=255)])
    is_primary = BooleanField('Primary')


# ---------------- RENTAL FORMS ----------------
class RentalForm(FlaskForm):
    vehicle_id = IntegerField('Vehicle', validators=[InputRequired()])
    customer_id = IntegerField('Customer', validators=[InputRequired()])
    incharger_id = IntegerField('Incharge', validators=[InputRequired()])
    status_id = IntegerField('Vehicle Status', validators=[InputRequired()])
    start_date = DateField('Start Date', validators=[DataRequired()])
    end_date = DateField('End Date', validators=[DataRequired()])
    period = StringField('Period', validators=[DataRequired(), Length(max=50)])  # e.g. "7 days"
    total_cost = DecimalField('Total Cost', places=2, validators=[InputRequired(), NumberRange(min=0)])
    notes = TextAreaField('Notes', validators=[Optional()])
    deposits = FieldList(FormField(DepositRowForm), min_entries=0)
    payments = FieldList(FormField(PaymentRowForm), min_entries=0)


class ComingDateForm(FlaskForm):
    incharger_id = IntegerField('Incharge', validators=[InputRequired()])
    coming_date = DateField('Coming Date', validators=[DataRequired()])
    status_id = IntegerField('Vehicle Status', validators=[Optional()])
    notes = TextAreaField('Notes', validators=[Optional()])


class ExtendRentalForm(FlaskForm):
    incharger_id = IntegerField('Incharge', validators=[InputRequired()])
    start_date = DateField('Start Date', validators=[DataRequired()])
    end_date = DateField('End Date', validators=[DataRequired()])
    coming_date = DateField('Coming Date', validators=[Optional()])
    period = StringField('Period', validators=[DataRequired(), Length(max=50)])
    notes = TextAreaField('Notes', validators=[Optional()])
    payments = FieldList(FormField(PaymentRowForm), min_entries=0)


class TemporaryReturnForm(FlaskForm):
    incharger_id = IntegerField('Incharge', validators=[InputRequired()])
    status_id = IntegerField('Vehicle Status', validators=[InputRequired()])
    end_date = DateField('End Date', validators=[DataRequired()])
    notes = TextAreaField('Notes', validators=[Optional()])


class ExchangeVehicleForm(FlaskForm):
    new_vehicle_id = IntegerField('New Vehicle', validators=[InputRequired()])
    previous_status_id = IntegerField('Previous Vehicle Status', validators=[InputRequired()])
    new_status_id = IntegerField('New Vehicle Status', validators=[InputRequired()])
    incharger_id = IntegerField('Incharge', validators=[InputRequired()])
    notes = TextAreaField('Notes', validators=[Optional()])


class ExchangeDepositForm(FlaskForm):
    incharger_id = IntegerField('Incharge', validators=[InputRequired()])
    notes = TextAreaField('Notes', validators=[Optional()])
    deposits = FieldList(FormField(DepositRowForm), min_entries=0)


class ReturnRentalForm(PasswordConfirmForm):
    status_id = IntegerField('Vehicle Status', validators=[InputRequired()])
    incharger_id = IntegerField('Incharge', validators=[Optional()])  # Who took the vehicle back
    notes = TextAreaField('Notes', validators=[Optional(), Length(max=500)])


# ---------------- CUSTOMER FORM ----------------
class CustomerForm(FlaskForm):
    first_name = StringField('First Name', validators=[DataRequired(), Length(max=100)])
    last_name = StringField('Last Name', validators=[DataRequired(), Length(max=100)])
    date_of_birth = DateField('Date of Birth', validators=[Optional()])
    gender = SelectField('Gender', choices=GENDER_CHOICES, validators=[Optional()])
    nationality = StringField('Nationality', validators=[Optional(), Length(max=100)])
    address_line_1 = StringField('Address Line 1', validators=[Optional(), Length(max=255)])
    address_line_2 = StringField('Address Line 2', validators=[Optional(), Length(max=255)])
    commune = StringField('Commune', validators=[Optional(), Length(max=100)])
    district = StringField('District', validators=[Optional(), Length(max=100)])
    city = StringField('City', validators=[Optional(), Length(max=100)])
    passport_number = StringField('Passport Number', validators=[Optional(), Length(max=100)])
    passport_expiry = DateField('Passport Expiry', validators=[Optional()])
    occupation = StringField('Occupation', validators=[Optional(), Length(max=100)])
    notes = TextAreaField('Notes', validators=[Optional()])
    contacts = FieldList(FormField(ContactRowForm), min_entries=0)


# ---------------- VISA FORM ----------------
class VisaForm(FlaskForm):
    customer_id = IntegerField('Customer', validators=[InputRequired()])
    incharger_id = IntegerField('Incharge', validators=[InputRequired()])
    passport_number = StringField('Passport Number', validators=[Optional(), Length(max=100)])
    visa_type = StringField('Visa Type', validators=[DataRequired(), Length(max=100)])
    expiration_date = DateField('Expiration Date', validators=[DataRequired()])
    notes = TextAreaField('Notes', validators=[Optional()])


# ---------------- VEHICLE FORM ----------------
class VehicleForm(FlaskForm):
    vehicle_no = StringField('Vehicle No.', validators=[DataRequired(), Length(max=50)])  # Business key
    license_plate = StringField('License Plate', validators=[Optional(), Length(max=50)])
    vin = StringField('VIN', validators=[Optional(), Length(max=100)])
    year = IntegerField('Year', validators=[Optional(), NumberRange(min=1900, max=2100)])
    color = StringField('Color', validators=[Optional(), Length(max=50)])
    engine_cc = IntegerField('Engine (cc)', validators=[Optional(), NumberRange(min=0)])
    vehicle_make_id = IntegerField('Make', validators=[Optional()])
    vehicle_model_id = IntegerField('Model', validators=[Optional()])
    vehicle_class_id = IntegerField('Class', validators=[Optional()])
    current_status_id = IntegerField('Status', validators=[InputRequired()])
    compensation_price = DecimalField('Compensation Price', places=2, validators=[Optional(), NumberRange(min=0)])
    purchase_price = DecimalField('Purchase Price', places=2, validators=[Optional(), NumberRange(min=0)])
    purchase_date = DateField('Purchase Date', validators=[Optional()])
    daily_rental_price = DecimalField('Daily Price', places=2, validators=[Optional(), NumberRange(min=0)])
    weekly_rental_price = DecimalField('Weekly Price', places=2, validators=[Optional(), NumberRange(min=0)])
    monthly_rental_price = DecimalField('Monthly Price', places=2, validators=[Optional(), NumberRange(min=0)])
    current_location = StringField('Location', validators=[Optional(), Length(max=100)])
    notes = TextAreaField('Notes', validators=[Optional()])


# ---------------- SETTINGS FORMS ----------------
# One form serves every lookup table; fields a table lacks are ignored
class LookupForm(FlaskForm):
    name = StringField('Name', validators=[DataRequired(), Length(max=100)])
    description = TextAreaField('Description', validators=[Optional()])
    is_rentable = BooleanField('Rentable')  # Vehicle statuses only
    is_active = BooleanField('Active', default=True)
    vehicle_make_id = IntegerField('Make', validators=[Optional()])  # Vehicle models only


class UserRolesForm(FlaskForm):
    role_ids = SelectMultipleField('Roles', coerce=int, validate_choice=False)


class RoleForm(FlaskForm):
    name = StringField('Role Name', validators=[DataRequired(), Length(max=100)])
    permission_ids = SelectMultipleField('Permissions', coerce=int, validate_choice=False)


# ---------------- ACCOUNTING FORMS ----------------
class SaleForm(FlaskForm):
    customer_id = IntegerField('Customer', validators=[InputRequired()])
    sale_date = DateField('Date', validators=[DataRequired()])
    item_description = StringField('Item', validators=[DataRequired(), Length(max=255)])
    amount = DecimalField('Amount', places=2, validators=[InputRequired(), NumberRange(min=0)])
    payment_type = SelectField('Payment Type', choices=PAYMENT_CHOICES, validators=[DataRequired()])
    credit_account_id = IntegerField('Income Account', validators=[InputRequired()])
    debit_target_account_id = IntegerField('Bank Account', validators=[Optional()])
    memo_ref_no = StringField('Memo / Ref No.', validators=[Optional(), Length(max=255)])


class ExpenseForm(FlaskForm):
    vendor_id = IntegerField('Vendor', validators=[InputRequired()])
    expense_date = DateField('Date', validators=[DataRequired()])
    item_description = StringField('Item', validators=[DataRequired(), Length(max=255)])
    amount = DecimalField('Amount', places=2, validators=[InputRequired(), NumberRange(min=0)])
    payment_type = SelectField('Payment Type', choices=EXPENSE_PAYMENT_CHOICES, validators=[DataRequired()])
    expense_account_id = IntegerField('Expense Account', validators=[InputRequired()])
    credit_source_account_id = IntegerField('Bank Account', validators=[Optional()])
    memo_ref_no = StringField('Memo / Ref No.', validators=[Optional(), Length(max=255)])


class JournalEntryForm(FlaskForm):
    transaction_date = DateField('Date', validators=[DataRequired()])
    item_description = TextAreaField('Description', validators=[DataRequired()])
    debit_account_id = IntegerField('Debit Account', validators=[InputRequired()])
    credit_account_id = IntegerField('Credit Account', validators=[InputRequired()])
    amount = DecimalField('Amount', places=2, validators=[InputRequired()])
    memo_ref_no = StringField('Memo / Ref No.', validators=[Optional(), Length(max=255)])


class VendorForm(FlaskForm):
    name = StringField('Vendor Name', validators=[DataRequired(), Length(max=150)])
    email = StringField('Email', validators=[Optional(), Email()])
    phone = StringField('Phone', validators=[Optional(), Length(max=50)])
    address = StringField('Address', validators=[Optional(), Length(max=255)])
    notes = TextAreaField('Notes', validators=[Optional()])
