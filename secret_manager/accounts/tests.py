from django.contrib.auth import get_user_model
from django.test import TestCase

from secret_store.models import Membership, Workspace

User = get_user_model()


class CustomUserManagerTests(TestCase):
    def test_create_user_normalizes_email_and_hashes_password(self):
        user = User.objects.create_user(email='Dev@EXAMPLE.com', password='s3cret-pass')
        self.assertEqual(user.email, 'Dev@example.com')
        self.assertTrue(user.check_password('s3cret-pass'))
        self.assertNotEqual(user.password, 's3cret-pass')
        self.assertTrue(user.is_active)
        self.assertFalse(user.is_staff)
        self.assertEqual(str(user), 'Dev@example.com')

    def test_create_user_requires_email(self):
        with self.assertRaises(ValueError):
            User.objects.create_user(email='', password='pw')

    def test_create_superuser_sets_flags(self):
        admin = User.objects.create_superuser(email='admin@example.com', password='pw')
        self.assertTrue(admin.is_staff)
        self.assertTrue(admin.is_superuser)

    def test_create_superuser_rejects_non_staff(self):
        with self.assertRaises(ValueError):
            User.objects.create_superuser(email='admin@example.com', password='pw', is_staff=False)
        with self.assertRaises(ValueError):
            User.objects.create_superuser(email='admin@example.com', password='pw', is_superuser=False)


class MembershipTests(TestCase):
    def test_user_can_join_several_workspaces(self):
        user = User.objects.create_user(email='member@example.com', password='pw')
        first = Workspace.objects.create(name='First')
        second = Workspace.objects.create(name='Second')
        Membership.objects.create(workspace=first, user=user)
        Membership.objects.create(workspace=second, user=user)
        self.assertEqual(
            set(user.memberships.values_list('workspace__name', flat=True)),
            {'First', 'Second'},
        )

    def test_is_member_of(self):
        user = User.objects.create_user(email='member@example.com', password='pw')
        joined = Workspace.objects.create(name='Joined')
        other = Workspace.objects.create(name='Other')
        Membership.objects.create(workspace=joined, user=user)

        self.assertTrue(user.is_member_of(joined.id))
        self.assertFalse(user.is_member_of(other.id))

        user.is_active = False
        self.assertFalse(user.is_member_of(joined.id))
