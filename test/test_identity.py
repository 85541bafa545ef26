from unittest import TestCase
from uuid import UUID

from entitystore.identity import new_key


class TestIdentity(TestCase):
    def test_new_key(self):
        keys = {new_key() for _ in range(1000)}
        self.assertEqual(len(keys), 1000)
        for key in keys:
            self.assertEqual(len(key), 36)
            self.assertEqual(str(UUID(key)), key)
