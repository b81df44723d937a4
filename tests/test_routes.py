"""HTTP flows: login, permissions, form handling and the page bridge."""
from datetime import timedelta

from flask import flash

from conftest import ADMIN_PASSWORD, CLERK_PASSWORD, NOW, TODAY, login
from models import (Contact, ContactType, Customer, DepositType, LedgerTransaction, Rental, Role, Sale, User,
                    Vehicle, VehicleClass, VehicleModel, VehicleStatus, Vendor, Visa, db)
from pages import build_page

INERTIA = {'X-Inertia': 'true'}


def rental_form(vehicle, customer, admin, statuses, deposit_types, accounts):
    return {
        'vehicle_id': vehicle.id,
        'customer_id': customer.id,
        'incharger_id': admin.id,
        'status_id': statuses['On Rent'].id,
        'start_date': TODAY.isoformat(),
        'end_date': (TODAY + timedelta(days=7)).isoformat(),
        'period': '7 days',
        'total_cost': '70.00',
        'deposits-0-type_id': deposit_types['Passport'].id,
        'deposits-0-deposit_value': 'X1234567',
        'deposits-0-is_primary': 'y',
        'payments-0-description': 'Rent 7 days',
        'payments-0-amount': '70.00',
        'payments-0-payment_type': 'cash',
        'payments-0-credit_account_id': accounts['AT Rental'].id,
    }


class TestAuth:
    def test_login_redirects_to_dashboard(self, client, admin):
        response = login(client, admin.email, ADMIN_PASSWORD)

        assert response.status_code == 302
        assert response.headers['Location'].endswith('/dashboard')

    def test_wrong_password_goes_back_to_login(self, client, admin):
        response = login(client, admin.email, 'wrong')

        assert response.headers['Location'].endswith('/login')

    def test_anonymous_user_is_sent_to_login(self, client, app):
        response = client.get('/rentals')

        assert response.status_code == 302
        assert '/login' in response.headers['Location']


class TestPermissions:
    def test_user_without_role_gets_forbidden_page(self, client, viewer):
        login(client, viewer.email, 'viewerpass')

        response = client.get('/rentals', headers=INERTIA)

        assert response.status_code == 403
        assert response.get_json()['component'] == 'errors/forbidden'

    def test_clerk_cannot_post_journal_entries(self, clerk_client, accounts):
        response = clerk_client.post('/accounting/ledger', data={
            'transaction_date': TODAY.isoformat(),
            'item_description': 'Transfer',
            'debit_account_id': accounts['Cash'].id,
            'credit_account_id': accounts["Owner's Equity"].id,
            'amount': '10',
        })

        assert response.status_code == 302
        assert LedgerTransaction.query.count() == 0


class TestRentalRoutes:
    def test_create_rental_from_form(self, admin_client, admin, vehicle, customer, statuses, deposit_types,
                                     accounts):
        data = rental_form(vehicle, customer, admin, statuses, deposit_types, accounts)

        response = admin_client.post('/rentals', data=data)

        assert response.status_code == 302
        rental = Rental.current().one()
        assert rental.vehicle_id == vehicle.id
        assert [d.deposit_value for d in rental.deposits] == ['X1234567']
        assert Sale.query.one().amount == 70

    def test_invalid_form_stores_field_errors(self, admin_client, admin, vehicle, customer, statuses,
                                              deposit_types, accounts):
        data = rental_form(vehicle, customer, admin, statuses, deposit_types, accounts)
        data['deposits-0-deposit_value'] = ''

        admin_client.post('/rentals', data=data)

        with admin_client.session_transaction() as session:
            assert 'deposits-0-deposit_value' in session['errors']
        assert Rental.query.count() == 0

    def test_errors_reach_the_next_page_once(self, admin_client, admin, vehicle, customer, statuses,
                                             deposit_types, accounts):
        data = rental_form(vehicle, customer, admin, statuses, deposit_types, accounts)
        data['period'] = ''
        admin_client.post('/rentals', data=data)

        first = admin_client.get('/rentals', headers=INERTIA).get_json()
        second = admin_client.get('/rentals', headers=INERTIA).get_json()

        assert 'period' in first['props']['errors']
        assert first['props']['flash']['error']
        assert second['props']['errors'] == {}

    def test_clerk_returns_rental_with_own_password(self, clerk_client, rent, vehicle, statuses):
        rental = rent(vehicle)

        response = clerk_client.post(f'/rentals/{rental.id}/return', data={
            'password': CLERK_PASSWORD,
            'status_id': statuses['In Stock'].id,
        })

        assert response.status_code == 302
        assert vehicle.current_rental_id is None
        assert vehicle.current_status_id == statuses['In Stock'].id
        assert Rental.current().count() == 0

    def test_return_records_incharge_and_notes(self, clerk_client, clerk, rent, vehicle, statuses):
        rental = rent(vehicle)

        clerk_client.post(f'/rentals/{rental.id}/return', data={
            'password': CLERK_PASSWORD,
            'status_id': statuses['In Stock'].id,
            'incharger_id': clerk.id,
            'notes': 'Returned with a flat tyre',
        })

        returned = db.session.get(Rental, rental.id)
        assert returned.is_deleted
        assert returned.incharger_id == clerk.id
        assert returned.notes == 'Returned with a flat tyre'

    def test_contract_pdf_download(self, admin_client, rent, vehicle):
        rental = rent(vehicle)

        response = admin_client.get(f'/rentals/{rental.id}/contract.pdf')

        assert response.status_code == 200
        assert response.mimetype == 'application/pdf'
        assert f'Rental-Contract-V001-{rental.id}.pdf' in response.headers['Content-Disposition']
        assert response.data.startswith(b'%PDF')


class TestPageBridge:
    def test_plain_request_gets_html_shell(self, admin_client):
        response = admin_client.get('/dashboard')

        assert response.mimetype == 'text/html'
        assert b'data-page=' in response.data

    def test_deferred_props_are_announced_not_loaded(self, admin_client):
        page = admin_client.get('/dashboard', headers=INERTIA).get_json()

        assert page['component'] == 'dashboard'
        assert page['deferredProps'] == {'default': ['stockByClass', 'rentedHistory']}
        assert 'stockByClass' not in page['props']
        assert 'counts' in page['props']

    def test_partial_reload_returns_only_requested_props(self, admin_client):
        headers = dict(INERTIA, **{
            'X-Inertia-Partial-Component': 'dashboard',
            'X-Inertia-Partial-Data': 'stockByClass',
        })

        page = admin_client.get('/dashboard', headers=headers).get_json()

        assert set(page['props']) == {'stockByClass', 'flash', 'errors'}
        assert 'deferredProps' not in page

    def test_messages_of_one_category_are_all_kept(self, app):
        with app.test_request_context('/rentals'):
            flash('Vehicle is rented out.', 'error')
            flash('Deposit is missing.', 'error')
            flash('Draft saved.', 'success')
            page = build_page('rentals/rentals-index', {})

        assert page['props']['flash'] == {
            'error': ['Vehicle is rented out.', 'Deposit is missing.'],
            'success': ['Draft saved.'],
        }

    def test_back_follows_a_referrer_on_this_site(self, admin_client):
        response = admin_client.post('/settings/classes', data={'name': 'Auto'},
                                     headers={'Referer': 'http://localhost/settings/classes'})

        assert response.status_code == 302
        assert response.headers['Location'].endswith('/settings/classes')

    def test_back_ignores_a_foreign_referrer(self, admin_client):
        for referrer in ('https://evil.example/phish', '//evil.example/phish', 'javascript:alert(1)'):
            response = admin_client.post('/settings/classes', data={'name': 'Auto'},
                                         headers={'Referer': referrer})

            assert 'evil.example' not in response.headers['Location']
            assert response.headers['Location'].endswith('/dashboard')


class TestSettings:
    def test_delete_requires_password(self, admin_client, statuses):
        sold = statuses['Sold']

        admin_client.post(f'/settings/statuses/{sold.id}/delete', data={})

        assert not db.session.get(VehicleStatus, sold.id).is_deleted

    def test_status_in_use_cannot_be_deleted(self, admin_client, vehicle, statuses):
        in_stock = statuses['In Stock']

        admin_client.post(f'/settings/statuses/{in_stock.id}/delete', data={'password': ADMIN_PASSWORD})

        assert not db.session.get(VehicleStatus, in_stock.id).is_deleted

    def test_unused_status_is_soft_deleted(self, admin_client, statuses):
        sold = statuses['Sold']

        admin_client.post(f'/settings/statuses/{sold.id}/delete', data={'password': ADMIN_PASSWORD})

        assert db.session.get(VehicleStatus, sold.id).is_deleted
        assert sold.id not in [s.id for s in VehicleStatus.live()]

    def test_unknown_settings_kind_is_not_found(self, admin_client):
        assert admin_client.get('/settings/spaceships').status_code == 404

    def test_duplicate_name_is_a_field_error(self, admin_client):
        before = VehicleClass.query.count()

        admin_client.post('/settings/classes', data={'name': 'Auto'})

        with admin_client.session_transaction() as session:
            assert session['errors'] == {'name': "'Auto' is already in use."}
        assert VehicleClass.query.count() == before

    def test_renaming_onto_another_name_is_refused(self, admin_client):
        manual = VehicleClass.query.filter_by(name='Manual').one()

        admin_client.post(f'/settings/classes/{manual.id}/update', data={'name': 'Auto'})

        assert db.session.get(VehicleClass, manual.id).name == 'Manual'

    def test_keeping_the_same_name_is_allowed(self, admin_client, statuses):
        in_stock = statuses['In Stock']

        admin_client.post(f'/settings/statuses/{in_stock.id}/update',
                          data={'name': 'In Stock', 'description': 'Ready'})

        in_stock = db.session.get(VehicleStatus, in_stock.id)
        assert in_stock.status_name == 'In Stock'
        assert in_stock.description == 'Ready'
        assert in_stock.is_rentable

    def test_model_names_may_repeat(self, admin_client):
        admin_client.post('/settings/models', data={'name': 'Wave'})
        admin_client.post('/settings/models', data={'name': 'Wave'})

        assert VehicleModel.query.filter_by(name='Wave').count() == 2

    def test_update_without_active_flag_keeps_it_active(self, admin_client, deposit_types):
        money = deposit_types['Money']

        admin_client.post(f'/settings/deposit-types/{money.id}/update', data={'name': 'Cash'})

        money = db.session.get(DepositType, money.id)
        assert money.name == 'Cash'
        assert money.is_active

    def test_active_flag_sent_as_false_deactivates(self, admin_client):
        telegram = ContactType.query.filter_by(name='Telegram').one()

        admin_client.post(f'/settings/contact-types/{telegram.id}/update',
                          data={'name': 'Telegram', 'is_active': 'false'})

        assert not db.session.get(ContactType, telegram.id).is_active

    def test_new_lookup_is_active_by_default(self, admin_client):
        admin_client.post('/settings/deposit-types', data={'name': 'Driving Licence'})

        assert DepositType.query.filter_by(name='Driving Licence').one().is_active


def customer_form(**overrides):
    data = {'first_name': 'Sok', 'last_name': 'Dara', 'gender': 'Male', 'nationality': 'Cambodian'}
    data.update(overrides)
    return data


class TestCustomerRoutes:
    def test_create_keeps_only_the_first_primary_contact(self, admin_client):
        mobile = ContactType.query.filter_by(name='Mobile Phone').one()
        email = ContactType.query.filter_by(name='Email').one()

        admin_client.post('/customers', data=customer_form(**{
            'contacts-0-contact_type_id': mobile.id,
            'contacts-0-contact_value': '+855 11 222 333',
            'contacts-0-is_primary': 'y',
            'contacts-1-contact_type_id': email.id,
            'contacts-1-contact_value': 'sok@example.com',
            'contacts-1-is_primary': 'y',
        }))

        customer = Customer.query.filter_by(last_name='Dara').one()
        contacts = sorted(customer.contacts, key=lambda c: c.id)
        assert [c.contact_value for c in contacts] == ['+855 11 222 333', 'sok@example.com']
        assert [c.is_primary for c in contacts] == [True, False]
        assert all(c.is_active for c in contacts)

    def test_update_edits_sent_contacts_and_closes_the_rest(self, admin_client, customer):
        mobile, email = sorted(customer.contacts, key=lambda c: c.id)

        admin_client.post(f'/customers/{customer.id}/update', data=customer_form(**{
            'first_name': 'Jane', 'last_name': 'Smith', 'gender': 'Female',
            'contacts-0-id': mobile.id,
            'contacts-0-contact_type_id': mobile.contact_type_id,
            'contacts-0-contact_value': '+855 99 000 111',
            'contacts-0-is_primary': 'y',
        }))

        customer = db.session.get(Customer, customer.id)
        assert customer.last_name == 'Smith'
        mobile = db.session.get(Contact, mobile.id)
        assert mobile.contact_value == '+855 99 000 111'
        assert mobile.is_primary and mobile.is_active
        email = db.session.get(Contact, email.id)
        assert not email.is_active
        assert email.end_date is not None

    def test_customer_with_active_rental_is_not_deleted(self, admin_client, rent, vehicle, customer):
        rent(vehicle)

        admin_client.post(f'/customers/{customer.id}/delete', data={'password': ADMIN_PASSWORD})

        assert not db.session.get(Customer, customer.id).is_deleted
        with admin_client.session_transaction() as session:
            assert session['errors'] == {'customer_id': 'This customer still has an active rental.'}

    def test_delete_soft_deletes(self, admin_client, customer):
        admin_client.post(f'/customers/{customer.id}/delete', data={'password': ADMIN_PASSWORD})

        assert db.session.get(Customer, customer.id).is_deleted

    def test_detail_api(self, admin_client, rent, vehicle, customer):
        rent(vehicle)

        response = admin_client.get(f'/api/customers/{customer.id}')

        assert response.status_code == 200
        detail = response.get_json()['customer']
        assert detail['full_name'] == 'Jane Doe'
        assert detail['primary_deposit'] == 'X1234567'
        assert detail['visas'] == []

    def test_detail_api_for_missing_or_deleted_customer(self, admin_client, customer):
        assert admin_client.get('/api/customers/4242').status_code == 404
        customer.soft_delete()
        db.session.commit()

        response = admin_client.get(f'/api/customers/{customer.id}')

        assert response.status_code == 404
        assert response.get_json() == {'error': 'Customer not found.'}


class TestVehicleRoutes:
    def test_create_vehicle(self, admin_client, statuses):
        auto = VehicleClass.query.filter_by(name='Auto').one()

        admin_client.post('/vehicles', data={
            'vehicle_no': 'V900', 'license_plate': 'PP-900', 'vehicle_class_id': auto.id,
            'current_status_id': statuses['In Stock'].id, 'daily_rental_price': '12.50',
        })

        vehicle = Vehicle.query.filter_by(vehicle_no='V900').one()
        assert vehicle.vehicle_class_id == auto.id
        assert vehicle.daily_rental_price == 12.5

    def test_duplicate_vehicle_number_is_refused(self, admin_client, vehicle, statuses):
        admin_client.post('/vehicles', data={'vehicle_no': 'V001', 'current_status_id': statuses['In Stock'].id})

        assert Vehicle.query.filter_by(vehicle_no='V001').count() == 1
        with admin_client.session_transaction() as session:
            assert 'vehicle_no' in session['errors']

    def test_update_vehicle(self, admin_client, vehicle, statuses):
        admin_client.post(f'/vehicles/{vehicle.id}/update', data={
            'vehicle_no': 'V001', 'color': 'Red', 'current_status_id': statuses['In Repair'].id,
        })

        vehicle = db.session.get(Vehicle, vehicle.id)
        assert vehicle.color == 'Red'
        assert vehicle.current_status_id == statuses['In Repair'].id

    def test_rented_vehicle_is_not_deleted(self, admin_client, rent, vehicle):
        rent(vehicle)

        admin_client.post(f'/vehicles/{vehicle.id}/delete', data={'password': ADMIN_PASSWORD})

        assert not db.session.get(Vehicle, vehicle.id).is_deleted

    def test_free_vehicle_is_soft_deleted(self, admin_client, vehicle):
        admin_client.post(f'/vehicles/{vehicle.id}/delete', data={'password': ADMIN_PASSWORD})

        assert db.session.get(Vehicle, vehicle.id).is_deleted
        assert Vehicle.live().count() == 0


class TestUserAndRoleRoutes:
    def test_roles_of_a_user_are_replaced(self, admin_client, clerk):
        admin_role = Role.query.filter_by(name='Admin').one()

        admin_client.post(f'/users/{clerk.id}/roles', data={'role_ids': [admin_role.id]})

        assert [r.name for r in db.session.get(User, clerk.id).roles] == ['Admin']

    def test_admin_cannot_delete_own_account(self, admin_client, admin):
        admin_client.post(f'/users/{admin.id}/delete', data={'password': ADMIN_PASSWORD})

        assert db.session.get(User, admin.id) is not None

    def test_delete_other_user(self, admin_client, clerk):
        clerk_id = clerk.id

        admin_client.post(f'/users/{clerk_id}/delete', data={'password': ADMIN_PASSWORD})

        assert db.session.get(User, clerk_id) is None

    def test_create_update_and_delete_role(self, admin_client):
        admin_client.post('/roles', data={'name': 'Accountant', 'permission_ids': []})
        role = Role.query.filter_by(name='Accountant').one()
        assert role.permissions == []

        admin_client.post(f'/roles/{role.id}/update', data={'name': 'Bookkeeper'})
        assert db.session.get(Role, role.id).name == 'Bookkeeper'

        admin_client.post(f'/roles/{role.id}/delete', data={'password': ADMIN_PASSWORD})
        assert db.session.get(Role, role.id) is None

    def test_duplicate_role_name_is_refused(self, admin_client):
        admin_client.post('/roles', data={'name': 'Clerk'})

        assert Role.query.filter_by(name='Clerk').count() == 1


class TestVendorRoutes:
    def test_duplicate_vendor_name_is_a_field_error(self, admin_client):
        admin_client.post('/accounting/vendors', data={'name': 'Fuel Depot'})
        admin_client.post('/accounting/vendors', data={'name': 'Fuel Depot'})

        assert Vendor.query.filter_by(name='Fuel Depot').count() == 1
        with admin_client.session_transaction() as session:
            assert session['errors'] == {'name': 'A vendor with this name already exists.'}

    def test_rename_onto_existing_vendor_is_refused(self, admin_client):
        admin_client.post('/accounting/vendors', data={'name': 'Fuel Depot'})
        admin_client.post('/accounting/vendors', data={'name': 'Tyre Shop'})
        tyres = Vendor.query.filter_by(name='Tyre Shop').one()

        admin_client.post(f'/accounting/vendors/{tyres.id}/update', data={'name': 'Fuel Depot'})

        assert db.session.get(Vendor, tyres.id).name == 'Tyre Shop'


class TestVisaRoutes:
    def test_clerk_registers_a_visa(self, clerk_client, clerk, customer):
        response = clerk_client.post('/visa/register', data={
            'customer_id': customer.id,
            'incharger_id': clerk.id,
            'visa_type': 'Business',
            'expiration_date': (TODAY + timedelta(days=90)).isoformat(),
        })

        assert response.status_code == 302
        visa = Visa.query.one()
        assert visa.customer_id == customer.id
        assert visa.passport_number == 'X1234567'
        assert visa.user_id == clerk.id

    def test_unknown_customer_and_incharge_are_field_errors(self, admin_client):
        admin_client.post('/visa/register', data={
            'customer_id': 4242,
            'incharger_id': 4242,
            'visa_type': 'Tourist',
            'expiration_date': TODAY.isoformat(),
        })

        assert Visa.query.count() == 0
        with admin_client.session_transaction() as session:
            assert set(session['errors']) == {'customer_id', 'incharger_id'}

    def test_visa_index_defers_its_lists(self, admin_client):
        page = admin_client.get('/visa', headers=INERTIA).get_json()

        assert page['component'] == 'visa/visa-index'
        assert page['deferredProps'] == {'default': ['visas', 'customers', 'users']}

    def test_viewer_cannot_open_visas(self, client, viewer):
        login(client, viewer.email, 'viewerpass')

        assert client.get('/visa', headers=INERTIA).status_code == 403


class TestReportRoutes:
    def test_transactions_report_for_a_day(self, admin_client, rent, vehicle):
        rent(vehicle)
        Rental.query.update({Rental.created_at: NOW})
        db.session.commit()
        headers = dict(INERTIA, **{
            'X-Inertia-Partial-Component': 'reports/rentals/rentals-report-index',
            'X-Inertia-Partial-Data': 'transactionCounts,totalTransactionCounts',
        })

        url = f'/reports/rentals-transaction?date={TODAY.isoformat()}'
        page = admin_client.get(url, headers=headers).get_json()

        assert page['props']['transactionCounts'] == {'New Rental': 1}
        assert page['props']['totalTransactionCounts'] == 1

    def test_bad_report_date_is_a_field_error(self, admin_client):
        response = admin_client.get('/reports/rentals-transaction?date=yesterday')

        assert response.status_code == 302
        with admin_client.session_transaction() as session:
            assert 'date' in session['errors']

    def test_full_details_of_a_returned_rental(self, admin_client, rent, vehicle, admin, statuses):
        rental = rent(vehicle)
        admin_client.post(f'/rentals/{rental.id}/return', data={
            'password': ADMIN_PASSWORD, 'status_id': statuses['In Stock'].id,
        })

        page = admin_client.get(f'/reports/full-details/rentals/{rental.id}', headers=INERTIA).get_json()

        assert page['component'] == 'full-details/reports-rentals-index'
        assert page['props']['rentalId'] == rental.id
        assert 'rentals' in page['deferredProps']['default']
