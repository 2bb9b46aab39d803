import sqlite3
import unittest
from datetime import datetime
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from app import db
from app.models import Plant, Reading
from app.route_helpers import db_commit_with_retry

from tests.app_case import AppTestCase


def locked():
    return OperationalError('COMMIT', {}, sqlite3.OperationalError('database is locked'))


class TestCommitWithRetry(AppTestCase):

    def setUp(self):
        super().setUp()
        user = self.make_user()
        self.plant = Plant(user_id=user.id, name='Roof', vendor='manual')
        db.session.add(self.plant)
        db.session.commit()
        self.plant_id = self.plant.id
        self.staged = 0

    def stage_reading(self):
        self.staged += 1
        db.session.add(Reading(plant_id=self.plant_id, timestamp=datetime(2024, 5, 1, 10), source='manual',
                               power_w=1500.0))
        return 'stored'

    def flaky_commit(self, failures):
        real_commit = db.session.commit

        def commit():
            if failures:
                raise failures.pop(0)
            return real_commit()
        return commit

    def test_locked_commit_replays_the_unit_of_work(self):
        with patch.object(db.session, 'commit', side_effect=self.flaky_commit([locked()])):
            result = db_commit_with_retry(self.stage_reading, retry_delay=0)

        self.assertEqual(result, 'stored')
        self.assertEqual(self.staged, 2)
        self.assertEqual(Reading.query.filter_by(plant_id=self.plant_id).count(), 1)

    def test_locked_commit_without_work_is_raised(self):
        db.session.add(Reading(plant_id=self.plant_id, timestamp=datetime(2024, 5, 1, 10), source='manual'))
        with patch.object(db.session, 'commit', side_effect=self.flaky_commit([locked()])):
            with self.assertRaises(OperationalError):
                db_commit_with_retry(retry_delay=0)

        self.assertEqual(Reading.query.filter_by(plant_id=self.plant_id).count(), 0)

    def test_other_errors_are_not_retried(self):
        def broken():
            self.staged += 1
            raise ValueError("bad row")

        with self.assertRaises(ValueError):
            db_commit_with_retry(broken, retry_delay=0)
        self.assertEqual(self.staged, 1)

    def test_gives_up_after_max_retries(self):
        failures = [locked() for _ in range(3)]
        with patch.object(db.session, 'commit', side_effect=self.flaky_commit(failures)):
            with self.assertRaises(OperationalError):
                db_commit_with_retry(self.stage_reading, max_retries=2, retry_delay=0)

        self.assertEqual(self.staged, 3)
        self.assertEqual(Reading.query.filter_by(plant_id=self.plant_id).count(), 0)


if __name__ == '__main__':
    unittest.main()
