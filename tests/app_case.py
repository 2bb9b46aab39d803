"""Flask app fixture for tests that touch the database."""
import unittest

from app import create_app, db
from app.models import User
from config import TestConfig


class AppTestCase(unittest.TestCase):

    def setUp(self):
        self.app = create_app(TestConfig)
        self.app_context = self.app.app_context()
        self.app_context.push()
        db.create_all()
        self.client = self.app.test_client()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    def make_user(self, email='owner@example.com', password='correct horse', is_admin=False, api_token=None):
        user = User(email=email, is_admin=is_admin, api_token=api_token)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    def login(self, email='owner@example.com', password='correct horse'):
        return self.client.post('/login', json={'email': email, 'password': password})
