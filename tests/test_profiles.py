import unittest

from app import db, profiles
from app.models import CredentialProfile, Plant
from app.monitoring.errors import ValidationError

from tests.app_case import AppTestCase

SOLAREDGE = {'name': 'Roof', 'vendor': 'solaredge', 'auth_mode': 'direct',
             'secrets': {'api_key': 'SECRET-KEY-123', 'site_id': '42'}}


class TestProfileStore(AppTestCase):

    def setUp(self):
        super().setUp()
        self.user = self.make_user()
        self.invalidated = []
        profiles.register_invalidation_listener(self.invalidated.append)

    def tearDown(self):
        profiles.unregister_invalidation_listener(self.invalidated.append)
        super().tearDown()

    def test_first_profile_for_vendor_becomes_default(self):
        first = profiles.create(self.user, SOLAREDGE)
        second = profiles.create(self.user, {**SOLAREDGE, 'name': 'Carport'})
        self.assertTrue(first.is_default)
        self.assertFalse(second.is_default)
        self.assertEqual([p.id for p in profiles.list_profiles(self.user)], [first.id, second.id])

    def test_set_default_leaves_a_single_default(self):
        first = profiles.create(self.user, SOLAREDGE)
        second = profiles.create(self.user, {**SOLAREDGE, 'name': 'Carport'})
        profiles.set_default(second.id, self.user)
        defaults = CredentialProfile.query.filter_by(user_id=self.user.id, vendor='solaredge', is_default=True).all()
        self.assertEqual([p.id for p in defaults], [second.id])
        self.assertEqual(profiles.list_profiles(self.user)[0].id, second.id)
        db.session.refresh(first)
        self.assertFalse(first.is_default)

    def test_defaults_are_per_vendor(self):
        solaredge = profiles.create(self.user, SOLAREDGE)
        sungrow = profiles.create(self.user, {'name': 'Inverter', 'vendor': 'sungrow', 'auth_mode': 'oauth2',
                                              'secrets': {'app_key': 'k', 'access_key': 's'}})
        self.assertTrue(solaredge.is_default)
        self.assertTrue(sungrow.is_default)

    def test_validation_lists_every_missing_field(self):
        with self.assertRaises(ValidationError) as ctx:
            profiles.create(self.user, {'name': '', 'vendor': 'sungrow', 'auth_mode': 'direct', 'app_key': 'k'})
        self.assertEqual(ctx.exception.missing_fields, ['name', 'access_key', 'username', 'password'])
        self.assertEqual(CredentialProfile.query.count(), 0)

    def test_validation_rejects_unknown_vendor_and_mode(self):
        with self.assertRaises(ValidationError) as ctx:
            profiles.create(self.user, {'name': 'x', 'vendor': 'fronius'})
        self.assertEqual(ctx.exception.missing_fields, ['vendor'])
        with self.assertRaises(ValidationError) as ctx:
            profiles.create(self.user, {**SOLAREDGE, 'auth_mode': 'oauth2'})
        self.assertEqual(ctx.exception.missing_fields, ['auth_mode'])

    def test_secrets_are_encrypted_and_masked(self):
        profile = profiles.create(self.user, SOLAREDGE)
        self.assertNotIn(b'SECRET-KEY-123', profile.secrets_encrypted)
        self.assertEqual(profile.get_secrets()['api_key'], 'SECRET-KEY-123')
        self.assertEqual(profile.to_dict()['secrets'], {'api_key': True, 'site_id': True})

    def test_secret_change_bumps_version_and_invalidates(self):
        profile = profiles.create(self.user, SOLAREDGE)
        profiles.update(profile.id, {'name': 'Renamed'}, self.user)
        self.assertEqual(profile.secrets_version, 1)
        self.assertEqual(self.invalidated, [])

        profiles.update(profile.id, {'secrets': {'api_key': 'ROTATED'}}, self.user)
        self.assertEqual(profile.secrets_version, 2)
        self.assertEqual(profile.get_secrets(), {'api_key': 'ROTATED', 'site_id': '42'})
        self.assertEqual(self.invalidated, [profile.id])

    def test_delete_detaches_plants_and_invalidates(self):
        profile = profiles.create(self.user, SOLAREDGE)
        plant = Plant(user_id=self.user.id, name='Roof', vendor='solaredge', vendor_plant_id='42', profile_id=profile.id)
        db.session.add(plant)
        db.session.commit()

        profiles.delete(profile.id, self.user)
        db.session.refresh(plant)
        self.assertIsNone(plant.profile_id)
        self.assertEqual(self.invalidated, [profile.id])

    def test_profiles_are_owner_scoped(self):
        profile = profiles.create(self.user, SOLAREDGE)
        stranger = self.make_user(email='other@example.com')
        self.assertIsNone(profiles.get(profile.id, stranger))
        with self.assertRaises(ValidationError):
            profiles.update(profile.id, {'name': 'mine now'}, stranger)

    def test_plant_falls_back_to_default_profile(self):
        profile = profiles.create(self.user, SOLAREDGE)
        plant = Plant(user_id=self.user.id, name='Roof', vendor='solaredge', vendor_plant_id='42')
        db.session.add(plant)
        db.session.commit()
        self.assertEqual(profiles.resolve_for_plant(plant).id, profile.id)

        config = profiles.to_profile_config(profile)
        self.assertEqual(config.base_url, self.app.config['SOLAREDGE_BASE_URL'])
        self.assertEqual(config.vendor_config()['api_key'], 'SECRET-KEY-123')


class TestProfileRoutes(AppTestCase):

    def setUp(self):
        super().setUp()
        self.user = self.make_user(api_token='script-token')

    def test_requires_authentication(self):
        response = self.client.get('/api/profiles')
        self.assertEqual(response.status_code, 401)

    def test_bearer_token_access(self):
        response = self.client.get('/api/profiles', headers={'Authorization': 'Bearer script-token'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'profiles': []})

    def test_create_reports_missing_fields(self):
        self.login()
        response = self.client.post('/api/profiles', json={'name': 'Roof', 'vendor': 'solaredge'})
        self.assertEqual(response.status_code, 400)
        body = response.get_json()
        self.assertEqual(body['error_class'], 'ValidationError')
        self.assertEqual(body['missing_fields'], ['api_key', 'site_id'])
        self.assertEqual(body['remediation'], 'fix_credentials')

    def test_crud_round(self):
        self.login()
        created = self.client.post('/api/profiles', json=SOLAREDGE)
        self.assertEqual(created.status_code, 201)
        profile_id = created.get_json()['id']
        self.assertNotIn('SECRET-KEY-123', created.get_data(as_text=True))

        updated = self.client.patch(f'/api/profiles/{profile_id}', json={'description': 'south roof'})
        self.assertEqual(updated.get_json()['description'], 'south roof')

        deleted = self.client.delete(f'/api/profiles/{profile_id}')
        self.assertEqual(deleted.get_json(), {'deleted': profile_id})
        self.assertEqual(self.client.get(f'/api/profiles/{profile_id}').status_code, 404)


if __name__ == '__main__':
    unittest.main()
