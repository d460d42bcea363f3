import base64
import json
import os
import threading
from io import StringIO
from unittest.mock import MagicMock, patch

from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from prometheus_client import REGISTRY

from secret_store import repository as repository_module
from secret_store.crypto_utils import content_hash, decrypt_symmetric, encrypt_symmetric
from secret_store.exceptions import (
    CryptoError,
    DecryptError,
    PullError,
    ReconciliationError,
    ReformatError,
    SnapshotError,
)
from secret_store.formatter import SecretFormat, decrypt_secrets, reformat_secrets
from secret_store.ledger import VersionLedger
from secret_store.locks import KeyedLock
from secret_store.models import Environment, Membership, Secret, SecretSnapshot, SecretVersion, Workspace
from secret_store.reconciler import SecretReconciler, diff_secrets, index_by_type_and_hash
from secret_store.repository import DjangoSecretRepository, InMemorySecretRepository
from secret_store.service import SecretService
from secret_store.signals import secrets_pulled, secrets_pushed
from secret_store.snapshots import SnapshotManager
from secret_store.types import EncryptedMaterial, IncomingSecret, SecretRecord, SecretType, SecretVersionRecord
from secret_store.views import PayloadError, parse_push_payload, sanitize_batch

User = get_user_model()

WORKSPACE = 'a3c9d0a4-7f1e-4a44-9a55-2f1e5c1f7a10'
WORKSPACE_KEY = bytes(range(32))


def material(label, plaintext=None):
    """Fake client-side material whose hash is derived from ``plaintext``."""
    return EncryptedMaterial(
        ciphertext=base64.b64encode(label.encode()).decode(),
        iv=base64.b64encode(b'iv-' + label.encode()).decode(),
        tag=base64.b64encode(b'tag-' + label.encode()).decode(),
        hash=content_hash(plaintext if plaintext is not None else label),
    )


def incoming(key, value, type=SecretType.SHARED):
    return IncomingSecret(type=type, key=material(f'k:{key}', key), value=material(f'v:{value}', value))


def encrypted_incoming(key, value, type=SecretType.SHARED):
    """Entry encrypted for real with WORKSPACE_KEY."""
    key_ct, key_iv, key_tag = encrypt_symmetric(key, WORKSPACE_KEY)
    value_ct, value_iv, value_tag = encrypt_symmetric(value, WORKSPACE_KEY)
    return IncomingSecret(
        type=type,
        key=EncryptedMaterial(key_ct, key_iv, key_tag, content_hash(key)),
        value=EncryptedMaterial(value_ct, value_iv, value_tag, content_hash(value)),
    )


def stored(key, value, type=SecretType.SHARED, user_id=None, version=1, secret_id=None):
    return SecretRecord(
        id=secret_id or f'id-{key}',
        workspace_id=WORKSPACE,
        environment='dev',
        type=type,
        user_id=user_id,
        key=material(f'k:{key}', key),
        value=material(f'v:{value}', value),
        version=version,
    )


def push_payload_entry(key, value, type='shared'):
    entry = {'type': type}
    for prefix, label in (('secretKey', key), ('secretValue', value)):
        m = material(label)
        entry.update({
            f'{prefix}Ciphertext': m.ciphertext,
            f'{prefix}IV': m.iv,
            f'{prefix}Tag': m.tag,
            f'{prefix}Hash': m.hash,
        })
    return entry


class CryptoUtilsTests(SimpleTestCase):
    def test_encrypt_and_decrypt_round_trip(self):
        ciphertext, iv, tag = encrypt_symmetric('DATABASE_URL', WORKSPACE_KEY)
        self.assertEqual(len(base64.b64decode(iv)), 16)
        self.assertEqual(len(base64.b64decode(tag)), 16)
        self.assertEqual(decrypt_symmetric(ciphertext, iv, tag, WORKSPACE_KEY), 'DATABASE_URL')

    def test_decrypt_raises_on_tampered_ciphertext(self):
        ciphertext, iv, tag = encrypt_symmetric('value', WORKSPACE_KEY)
        raw = bytearray(base64.b64decode(ciphertext))
        raw[0] ^= 0xFF
        tampered = base64.b64encode(bytes(raw)).decode()
        with self.assertRaises(CryptoError):
            decrypt_symmetric(tampered, iv, tag, WORKSPACE_KEY)

    def test_decrypt_with_wrong_key_raises(self):
        ciphertext, iv, tag = encrypt_symmetric('value', WORKSPACE_KEY)
        with self.assertRaises(CryptoError):
            decrypt_symmetric(ciphertext, iv, tag, os.urandom(32))

    def test_key_length_is_validated(self):
        with self.assertRaises(CryptoError):
            encrypt_symmetric('value', b'short')

    def test_invalid_base64_raises(self):
        with self.assertRaises(CryptoError):
            decrypt_symmetric('not base64!', 'AAAA', 'AAAA', WORKSPACE_KEY)

    def test_content_hash_is_stable_sha256(self):
        self.assertEqual(content_hash('abc'), content_hash('abc'))
        self.assertEqual(len(content_hash('abc')), 64)
        self.assertNotEqual(content_hash('abc'), content_hash('abd'))


class DiffSecretsTests(SimpleTestCase):
    def test_classifies_every_key_hash(self):
        current = [stored('A', '1'), stored('B', '2'), stored('C', '3')]
        batch = [incoming('A', '1'), incoming('B', '20'), incoming('D', '4')]

        result = diff_secrets(current, batch)

        self.assertEqual([s.id for s in result.to_delete], ['id-C'])
        self.assertEqual([u.current.id for u in result.to_update], ['id-B'])
        self.assertEqual(result.to_update[0].incoming.value_hash, content_hash('20'))
        self.assertEqual([e.key_hash for e in result.to_add], [content_hash('D')])
        self.assertEqual([s.id for s in result.unchanged], ['id-A'])
        self.assertTrue(result.has_changes)

    def test_identical_batch_has_no_changes(self):
        current = [stored('A', '1'), stored('B', '2')]
        result = diff_secrets(current, [incoming('A', '1'), incoming('B', '2')])
        self.assertFalse(result.has_changes)
        self.assertEqual(len(result.unchanged), 2)

    def test_type_change_is_an_update(self):
        current = [stored('A', '1')]
        result = diff_secrets(current, [incoming('A', '1', type=SecretType.PERSONAL)])
        self.assertEqual(len(result.to_update), 1)
        self.assertEqual(result.to_delete, [])
        self.assertEqual(result.to_add, [])

    def test_empty_batch_deletes_everything(self):
        current = [stored('A', '1'), stored('B', '2')]
        result = diff_secrets(current, [])
        self.assertEqual(len(result.to_delete), 2)

    def test_duplicate_key_hash_in_batch_keeps_last_entry(self):
        result = diff_secrets([], [incoming('A', '1'), incoming('A', '2')])
        self.assertEqual(len(result.to_add), 1)
        self.assertEqual(result.to_add[0].value_hash, content_hash('2'))

    def test_index_by_type_and_hash_last_wins(self):
        index = index_by_type_and_hash([stored('A', '1', secret_id='first'), stored('A', '2', secret_id='second')])
        self.assertEqual(index[(SecretType.SHARED, content_hash('A'))].id, 'second')

    def test_personal_and_shared_with_same_key_are_matched_by_type(self):
        current = [
            stored('X', 'mine', type=SecretType.PERSONAL, user_id=1, secret_id='personal'),
            stored('X', 'theirs', secret_id='shared'),
        ]
        batch = [incoming('X', 'mine2', type=SecretType.PERSONAL), incoming('X', 'theirs')]

        result = diff_secrets(current, batch)

        self.assertEqual([u.current.id for u in result.to_update], ['personal'])
        self.assertEqual([s.id for s in result.unchanged], ['shared'])
        self.assertEqual(result.to_add, [])
        self.assertEqual(result.to_delete, [])

    def test_personal_only_batch_keeps_personal_record(self):
        current = [
            stored('X', 'mine', type=SecretType.PERSONAL, user_id=1, secret_id='personal'),
            stored('X', 'theirs', secret_id='shared'),
        ]
        result = diff_secrets(current, [incoming('X', 'mine2', type=SecretType.PERSONAL)])

        self.assertEqual([u.current.id for u in result.to_update], ['personal'])
        self.assertEqual(result.to_update[0].current.type, SecretType.PERSONAL)
        self.assertEqual([s.id for s in result.to_delete], ['shared'])

    def test_no_flip_when_batch_claims_the_stored_type(self):
        current = [stored('X', 'theirs', secret_id='shared')]
        batch = [incoming('X', 'theirs'), incoming('X', 'mine', type=SecretType.PERSONAL)]

        result = diff_secrets(current, batch)

        self.assertEqual([s.id for s in result.unchanged], ['shared'])
        self.assertEqual([e.type for e in result.to_add], [SecretType.PERSONAL])
        self.assertEqual(result.to_update, [])


class ReconcilerTests(SimpleTestCase):
    def test_fetch_failure_becomes_reconciliation_error(self):
        repo = MagicMock()
        repo.find_visible_secrets.side_effect = RuntimeError('db down')

        with self.assertRaises(ReconciliationError):
            SecretReconciler(repo).reconcile(1, WORKSPACE, 'dev', [incoming('A', '1')])

    def test_reconciles_against_personal_and_shared_scope(self):
        repo = InMemorySecretRepository()
        repo.insert_secrets([
            SecretRecord.create(WORKSPACE, 'dev', 7, incoming('MINE', 'x', type=SecretType.PERSONAL)),
            SecretRecord.create(WORKSPACE, 'dev', 8, incoming('THEIRS', 'y', type=SecretType.PERSONAL)),
            SecretRecord.create(WORKSPACE, 'dev', 7, incoming('SHARED', 'z')),
        ])

        result = SecretReconciler(repo).reconcile(7, WORKSPACE, 'dev', [])

        deleted = sorted(s.key_hash for s in result.to_delete)
        self.assertEqual(deleted, sorted([content_hash('MINE'), content_hash('SHARED')]))


class VersionLedgerTests(SimpleTestCase):
    def setUp(self):
        self.repo = InMemorySecretRepository()
        self.ledger = VersionLedger(self.repo)

    def test_append_and_history_in_order(self):
        self.ledger.append_version('s1', WORKSPACE, 2, material('k'), material('v2'))
        self.ledger.append_version('s1', WORKSPACE, 1, material('k'), material('v1'))
        self.assertEqual([v.version for v in self.ledger.history('s1')], [1, 2])

    def test_rejects_non_positive_versions(self):
        with self.assertRaises(ValueError):
            self.ledger.append_version('s1', WORKSPACE, 0, material('k'), material('v'))

    def test_duplicate_version_is_rejected(self):
        self.ledger.append_version('s1', WORKSPACE, 1, material('k'), material('v'))
        with self.assertRaises(ValueError):
            self.ledger.append_version('s1', WORKSPACE, 1, material('k'), material('v'))

    def test_mark_deleted_only_touches_the_given_secrets(self):
        self.ledger.append_version('s1', WORKSPACE, 1, material('k'), material('v'))
        self.ledger.append_version('s2', WORKSPACE, 1, material('k2'), material('v'))

        self.assertEqual(self.ledger.mark_deleted(['s1']), 1)
        self.assertTrue(self.ledger.history('s1')[0].is_deleted)
        self.assertFalse(self.ledger.history('s2')[0].is_deleted)
        self.assertEqual(self.ledger.mark_deleted([]), 0)


class SnapshotManagerTests(SimpleTestCase):
    def test_versions_increase_from_one(self):
        repo = InMemorySecretRepository()
        manager = SnapshotManager(repo)
        self.assertEqual(manager.take_snapshot(WORKSPACE).version, 1)
        self.assertEqual(manager.take_snapshot(WORKSPACE).version, 2)
        self.assertEqual([s.version for s in manager.list(WORKSPACE)], [2, 1])
        self.assertEqual(manager.latest(WORKSPACE).version, 2)
        self.assertIsNone(manager.get(WORKSPACE, 5))

    def test_snapshot_covers_all_environments(self):
        repo = InMemorySecretRepository()
        repo.insert_secrets([
            SecretRecord.create(WORKSPACE, 'dev', None, incoming('A', '1')),
            SecretRecord.create(WORKSPACE, 'prod', None, incoming('B', '2')),
        ])
        snapshot = SnapshotManager(repo).take_snapshot(WORKSPACE)
        self.assertEqual(sorted(s.environment for s in snapshot.secrets), ['dev', 'prod'])

    def test_failure_becomes_snapshot_error(self):
        repo = MagicMock()
        repo.find_secrets.return_value = []
        repo.latest_snapshot.side_effect = RuntimeError('boom')
        with self.assertRaises(SnapshotError):
            SnapshotManager(repo).take_snapshot(WORKSPACE)


class InMemoryPushTests(SimpleTestCase):
    def setUp(self):
        self.repo = InMemorySecretRepository()
        self.service = SecretService(self.repo, serialize_writes=True)

    def push(self, batch, user_id=1, environment='dev'):
        return self.service.push(user_id, WORKSPACE, environment, batch)

    def test_first_push_creates_version_and_snapshot(self):
        result = self.push([incoming('k1', 'v1')])

        secrets = self.repo.find_secrets(WORKSPACE)
        self.assertEqual(len(secrets), 1)
        self.assertEqual(secrets[0].version, 1)
        self.assertEqual([v.version for v in self.repo.find_versions(secrets[0].id)], [1])
        self.assertEqual(result.added, 1)
        self.assertEqual(result.snapshot_version, 1)

    def test_changed_value_bumps_version(self):
        self.push([incoming('k1', 'v1')])
        result = self.push([incoming('k1', 'v2')])

        secret = self.repo.find_secrets(WORKSPACE)[0]
        history = self.repo.find_versions(secret.id)
        self.assertEqual(secret.version, 2)
        self.assertEqual([v.version for v in history], [1, 2])
        self.assertEqual(history[0].value.hash, content_hash('v1'))
        self.assertEqual(result.updated, 1)
        self.assertEqual(result.snapshot_version, 2)

    def test_empty_push_hard_deletes_and_flags_versions(self):
        self.push([incoming('k1', 'v1')])
        secret_id = self.repo.find_secrets(WORKSPACE)[0].id
        self.push([incoming('k1', 'v2')])
        result = self.push([])

        self.assertEqual(self.repo.find_secrets(WORKSPACE), [])
        self.assertTrue(all(v.is_deleted for v in self.repo.find_versions(secret_id)))
        latest = self.repo.latest_snapshot(WORKSPACE)
        self.assertEqual(latest.version, 3)
        self.assertEqual(latest.secrets, ())
        self.assertEqual(result.deleted, 1)

    def test_repeated_push_only_adds_snapshots(self):
        batch = [incoming('A', '1'), incoming('B', '2', type=SecretType.PERSONAL)]
        self.push(batch)
        before = {s.id: s for s in self.repo.find_secrets(WORKSPACE)}

        result = self.push(batch)

        after = {s.id: s for s in self.repo.find_secrets(WORKSPACE)}
        self.assertEqual(before, after)
        self.assertEqual(len(self.repo.versions), 2)
        self.assertEqual(result.unchanged, 2)
        self.assertEqual(result.snapshot_version, 2)

    def test_versions_stay_contiguous_across_pushes(self):
        for value in ('1', '2', '3', '4'):
            self.push([incoming('A', value)])
        secret = self.repo.find_secrets(WORKSPACE)[0]
        versions = [v.version for v in self.repo.find_versions(secret.id)]
        self.assertEqual(versions, [1, 2, 3, 4])
        self.assertEqual(versions[-1], secret.version)

    def test_snapshots_match_secret_table(self):
        self.push([incoming('A', '1')])
        self.push([incoming('A', '1'), incoming('B', '2')])
        for snapshot in self.repo.find_snapshots(WORKSPACE):
            self.assertTrue(all(s.workspace_id == WORKSPACE for s in snapshot.secrets))
        latest = self.repo.latest_snapshot(WORKSPACE)
        self.assertEqual(sorted(s.id for s in latest.secrets), sorted(s.id for s in self.repo.find_secrets(WORKSPACE)))

    def test_type_flip_updates_in_place(self):
        self.push([incoming('A', '1')])
        original = self.repo.find_secrets(WORKSPACE)[0]

        self.push([incoming('A', '1', type=SecretType.PERSONAL)], user_id=5)

        flipped = self.repo.find_secrets(WORKSPACE)[0]
        self.assertEqual(flipped.id, original.id)
        self.assertEqual(flipped.type, SecretType.PERSONAL)
        self.assertEqual(flipped.user_id, 5)
        self.assertEqual(flipped.version, 2)

        result = self.push([incoming('A', '1', type=SecretType.PERSONAL)], user_id=5)
        self.assertEqual(result.unchanged, 1)

    def test_other_users_personal_secrets_are_untouched(self):
        self.push([incoming('MINE', '1', type=SecretType.PERSONAL)], user_id=1)
        self.push([], user_id=2)
        self.assertEqual(len(self.repo.find_secrets(WORKSPACE, user_id=1)), 1)

    def test_failure_mid_push_rolls_back(self):
        self.push([incoming('A', '1')])
        secrets_before = dict(self.repo.secrets)
        versions_before = list(self.repo.versions)

        with patch.object(self.repo, 'insert_versions', side_effect=RuntimeError('disk full')):
            with self.assertRaises(ReconciliationError):
                self.push([incoming('A', '2'), incoming('B', '3')])

        self.assertEqual(self.repo.secrets, secrets_before)
        self.assertEqual(self.repo.versions, versions_before)
        self.assertEqual(len(self.repo.snapshots), 1)

    def test_snapshot_failure_rolls_back_and_propagates(self):
        with patch.object(self.repo, 'insert_snapshot', side_effect=RuntimeError('conflict')):
            with self.assertRaises(SnapshotError):
                self.push([incoming('A', '1')])
        self.assertEqual(self.repo.secrets, {})
        self.assertEqual(self.repo.versions, [])

    def test_concurrent_pushes_get_distinct_snapshot_versions(self):
        errors = []

        def worker(index):
            try:
                self.push([incoming(f'K{index}', 'v')], environment=f'env-{index}')
            except Exception as exc:  # pragma: no cover - reported below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        versions = sorted(s.version for s in self.repo.find_snapshots(WORKSPACE))
        self.assertEqual(versions, list(range(1, 9)))

    def test_failed_push_keeps_concurrent_commit_without_serialization(self):
        service = SecretService(self.repo, serialize_writes=False)
        entered = threading.Event()
        release = threading.Event()
        original = self.repo.insert_versions
        errors = []

        def insert_versions(versions):
            if threading.current_thread().name == 'failing':
                entered.set()
                release.wait(timeout=5)
                raise RuntimeError('disk full')
            return original(versions)

        def worker(environment):
            try:
                service.push(1, WORKSPACE, environment, [incoming(f'K-{environment}', 'v')])
            except ReconciliationError as exc:
                errors.append(exc)

        with patch.object(self.repo, 'insert_versions', side_effect=insert_versions):
            failing = threading.Thread(target=worker, args=('dev',), name='failing')
            failing.start()
            self.assertTrue(entered.wait(timeout=5))
            succeeding = threading.Thread(target=worker, args=('prod',))
            succeeding.start()
            release.set()
            failing.join()
            succeeding.join()

        self.assertEqual(len(errors), 1)
        self.assertEqual([s.environment for s in self.repo.find_secrets(WORKSPACE)], ['prod'])
        self.assertEqual(len(self.repo.find_snapshots(WORKSPACE)), 1)

    def test_take_snapshot_counts_metric(self):
        before = REGISTRY.get_sample_value('secret_store_snapshots_total') or 0.0

        self.service.take_snapshot(WORKSPACE)

        self.assertEqual(REGISTRY.get_sample_value('secret_store_snapshots_total'), before + 1)

    def test_push_sends_signal_with_result(self):
        handler = MagicMock()
        secrets_pushed.connect(handler, weak=False)
        self.addCleanup(secrets_pushed.disconnect, handler)

        self.service.push(1, WORKSPACE, 'dev', [incoming('A', '1')], channel='web', ip_address='10.0.0.1')

        kwargs = handler.call_args.kwargs
        self.assertEqual(kwargs['channel'], 'web')
        self.assertEqual(kwargs['ip_address'], '10.0.0.1')
        self.assertEqual(kwargs['secret_count'], 1)
        self.assertEqual(kwargs['result'].added, 1)

    def test_push_counts_metrics(self):
        def sample(name, labels):
            return REGISTRY.get_sample_value(name, labels) or 0.0

        before = sample('secret_store_pushes_total', {'status': 'success'})
        added_before = sample('secret_store_secret_changes_total', {'change': 'added'})

        self.push([incoming('A', '1'), incoming('B', '2')])

        self.assertEqual(sample('secret_store_pushes_total', {'status': 'success'}), before + 1)
        self.assertEqual(sample('secret_store_secret_changes_total', {'change': 'added'}), added_before + 2)

    def test_channel_defaults_to_setting(self):
        handler = MagicMock()
        secrets_pulled.connect(handler, weak=False)
        self.addCleanup(secrets_pulled.disconnect, handler)

        with override_settings(SECRET_STORE_DEFAULT_CHANNEL='api'):
            self.service.pull(1, WORKSPACE, 'dev')

        self.assertEqual(handler.call_args.kwargs['channel'], 'api')


class PullTests(SimpleTestCase):
    def setUp(self):
        self.repo = InMemorySecretRepository()
        self.service = SecretService(self.repo)

    def test_personal_secrets_come_first(self):
        self.service.push(3, WORKSPACE, 'dev', [
            incoming('SHARED', 's'),
            incoming('MINE', 'p', type=SecretType.PERSONAL),
        ])
        self.service.push(4, WORKSPACE, 'dev', [
            incoming('SHARED', 's'),
            incoming('OTHER', 'o', type=SecretType.PERSONAL),
        ])

        pulled = self.service.pull(3, WORKSPACE, 'dev')

        self.assertEqual([s.type for s in pulled], [SecretType.PERSONAL, SecretType.SHARED])
        self.assertEqual(pulled[0].key_hash, content_hash('MINE'))
        self.assertEqual(pulled[0].user_id, 3)

    def test_pull_filters_environment(self):
        self.service.push(3, WORKSPACE, 'dev', [incoming('A', '1')])
        self.assertEqual(self.service.pull(3, WORKSPACE, 'prod'), [])

    def test_query_failure_becomes_pull_error(self):
        with patch.object(self.repo, 'find_secrets', side_effect=RuntimeError('timeout')):
            with self.assertRaises(PullError):
                self.service.pull(3, WORKSPACE, 'dev')


class FormatterTests(SimpleTestCase):
    def setUp(self):
        repo = InMemorySecretRepository()
        self.service = SecretService(repo)
        self.service.push(1, WORKSPACE, 'dev', [
            encrypted_incoming('API_KEY', 'abc'),
            encrypted_incoming('TOKEN', 'xyz'),
        ])
        self.secrets = self.service.pull(1, WORKSPACE, 'dev')

    def test_text_format(self):
        content = decrypt_secrets(self.secrets, WORKSPACE_KEY, SecretFormat.TEXT)
        self.assertEqual(content, 'API_KEY=abc\nTOKEN=xyz')

    def test_object_format(self):
        content = decrypt_secrets(self.secrets, WORKSPACE_KEY, 'object')
        self.assertEqual(content, {'API_KEY': 'abc', 'TOKEN': 'xyz'})

    def test_object_format_keeps_later_duplicate(self):
        batch = [encrypted_incoming('API_KEY', 'first'), encrypted_incoming('API_KEY', 'second')]
        self.assertEqual(decrypt_secrets(batch, WORKSPACE_KEY, SecretFormat.OBJECT), {'API_KEY': 'second'})

    def test_expanded_format_includes_record_fields(self):
        content = self.service.decrypt(self.secrets, WORKSPACE_KEY, SecretFormat.EXPANDED)
        self.assertEqual(set(content), {'API_KEY', 'TOKEN'})
        entry = content['API_KEY']
        self.assertEqual(entry['plaintext_value'], 'abc')
        self.assertEqual(entry['workspace_id'], WORKSPACE)
        self.assertIn('key', entry)

    def test_unknown_format_raises(self):
        with self.assertRaises(DecryptError):
            decrypt_secrets(self.secrets, WORKSPACE_KEY, 'yaml')

    def test_wrong_key_fails_without_partial_result(self):
        with self.assertRaises(DecryptError):
            decrypt_secrets(self.secrets, os.urandom(32))

    def test_reformat_splits_material(self):
        reformatted = reformat_secrets(self.secrets)
        self.assertEqual(len(reformatted), 2)
        entry = reformatted[0]
        self.assertEqual(entry['workspace'], WORKSPACE)
        self.assertEqual(entry['environment'], 'dev')
        self.assertEqual(set(entry['secret_key']), {'workspace', 'ciphertext', 'iv', 'tag', 'hash'})
        self.assertEqual(entry['secret_value']['hash'], content_hash('abc'))

    def test_reformat_failure_raises(self):
        with self.assertRaises(ReformatError):
            reformat_secrets([object()])


class KeyedLockTests(SimpleTestCase):
    def test_same_key_is_reentrant(self):
        locks = KeyedLock()
        with locks.hold('w1'):
            with locks.hold('w1'):
                pass

    def test_released_keys_are_dropped(self):
        locks = KeyedLock()
        with locks.hold('w1'):
            with locks.hold('w1'):
                self.assertEqual(list(locks._locks), ['w1'])
            self.assertEqual(list(locks._locks), ['w1'])
        self.assertEqual(locks._locks, {})

        def other():
            with locks.hold('w2'):
                pass

        thread = threading.Thread(target=other)
        thread.start()
        thread.join()
        self.assertEqual(locks._locks, {})

    def test_lock_is_dropped_when_block_raises(self):
        locks = KeyedLock()
        with self.assertRaises(RuntimeError):
            with locks.hold('w1'):
                raise RuntimeError('boom')
        self.assertEqual(locks._locks, {})

    def test_distinct_keys_do_not_block(self):
        locks = KeyedLock()
        acquired = threading.Event()

        def other():
            with locks.hold('w2'):
                acquired.set()

        with locks.hold('w1'):
            thread = threading.Thread(target=other)
            thread.start()
            self.assertTrue(acquired.wait(timeout=5))
            thread.join()


class RepositoryFactoryTests(SimpleTestCase):
    def setUp(self):
        self.addCleanup(setattr, repository_module, '_repository_instance', repository_module._repository_instance)
        repository_module._repository_instance = None

    @override_settings(SECRET_STORE_REPOSITORY_BACKEND='memory')
    def test_memory_backend(self):
        self.assertIsInstance(repository_module.get_secret_repository(), InMemorySecretRepository)
        self.assertIs(repository_module.get_secret_repository(), repository_module.get_secret_repository())

    @override_settings(SECRET_STORE_REPOSITORY_BACKEND='django')
    def test_django_backend(self):
        self.assertIsInstance(repository_module.get_secret_repository(), DjangoSecretRepository)

    @override_settings(SECRET_STORE_REPOSITORY_BACKEND='redis')
    def test_unknown_backend(self):
        with self.assertRaises(ImproperlyConfigured):
            repository_module.get_secret_repository()


class DjangoRepositoryPushTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email='dev@example.com', password='pw')
        self.workspace = Workspace.objects.create(name='Acme')
        self.workspace_id = str(self.workspace.id)
        self.service = SecretService(DjangoSecretRepository())

    def push(self, batch):
        return self.service.push(self.user.pk, self.workspace_id, 'dev', batch)

    def test_scenarios_create_update_delete(self):
        self.push([incoming('k1', 'v1')])
        secret = Secret.objects.get()
        self.assertEqual(secret.version, 1)
        self.assertEqual(SecretVersion.objects.filter(secret_id=secret.id).count(), 1)
        self.assertEqual(SecretSnapshot.objects.get().version, 1)

        self.push([incoming('k1', 'v2')])
        secret.refresh_from_db()
        self.assertEqual(secret.version, 2)
        self.assertEqual(secret.secret_value_hash, content_hash('v2'))
        first = SecretVersion.objects.get(secret_id=secret.id, version=1)
        self.assertEqual(first.secret_value_hash, content_hash('v1'))
        self.assertEqual(SecretSnapshot.objects.order_by('-version').first().version, 2)

        self.push([])
        self.assertFalse(Secret.objects.exists())
        versions = SecretVersion.objects.filter(secret_id=secret.id)
        self.assertEqual(versions.count(), 2)
        self.assertTrue(all(v.is_deleted for v in versions))
        latest = SecretSnapshot.objects.order_by('-version').first()
        self.assertEqual(latest.version, 3)
        self.assertEqual(latest.secrets, [])

    def test_personal_secret_is_owned(self):
        self.push([incoming('P', '1', type=SecretType.PERSONAL), incoming('S', '2')])
        self.assertEqual(Secret.objects.get(type=SecretType.PERSONAL).user_id, self.user.pk)
        self.assertIsNone(Secret.objects.get(type=SecretType.SHARED).user_id)

    def test_personal_override_survives_shared_secret_with_same_key(self):
        other = User.objects.create_user(email='other@example.com', password='pw')
        self.push([incoming('X', 'mine', type=SecretType.PERSONAL)])
        self.service.push(other.pk, self.workspace_id, 'dev', [incoming('X', 'theirs')])

        result = self.push([incoming('X', 'mine2', type=SecretType.PERSONAL), incoming('X', 'theirs')])

        personal = Secret.objects.get(type=SecretType.PERSONAL)
        shared = Secret.objects.get(type=SecretType.SHARED)
        self.assertEqual(personal.user_id, self.user.pk)
        self.assertEqual(personal.version, 2)
        self.assertEqual(personal.secret_value_hash, content_hash('mine2'))
        self.assertIsNone(shared.user_id)
        self.assertEqual(shared.version, 1)
        self.assertEqual(result.updated, 1)
        self.assertEqual(result.unchanged, 1)

    def test_personal_only_push_beside_shared_secret_succeeds(self):
        other = User.objects.create_user(email='other@example.com', password='pw')
        self.push([incoming('X', 'mine', type=SecretType.PERSONAL)])
        self.service.push(other.pk, self.workspace_id, 'dev', [incoming('X', 'theirs')])

        self.push([incoming('X', 'mine2', type=SecretType.PERSONAL)])

        personal = Secret.objects.get()
        self.assertEqual(personal.type, SecretType.PERSONAL)
        self.assertEqual(personal.user_id, self.user.pk)
        self.assertEqual(personal.secret_value_hash, content_hash('mine2'))

    def test_type_flip_updates_row(self):
        self.push([incoming('A', '1')])
        self.push([incoming('A', '1', type=SecretType.PERSONAL)])
        secret = Secret.objects.get()
        self.assertEqual(secret.type, SecretType.PERSONAL)
        self.assertEqual(secret.user_id, self.user.pk)
        self.assertEqual(secret.version, 2)

    def test_snapshot_failure_rolls_back(self):
        with patch.object(DjangoSecretRepository, 'insert_snapshot', side_effect=RuntimeError('conflict')):
            with self.assertRaises(SnapshotError):
                self.push([incoming('A', '1')])
        self.assertFalse(Secret.objects.exists())
        self.assertFalse(SecretVersion.objects.exists())

    def test_snapshot_stores_serialized_records(self):
        self.push([incoming('A', '1')])
        snapshot = self.service.get_snapshot(self.workspace_id)
        self.assertEqual(snapshot.version, 1)
        self.assertEqual(snapshot.secrets[0].key_hash, content_hash('A'))
        self.assertEqual(snapshot.secrets[0].environment, 'dev')

    def test_secret_history(self):
        self.push([incoming('A', '1')])
        self.push([incoming('A', '2')])
        secret_id = str(Secret.objects.get().id)
        history = self.service.secret_history(secret_id)
        self.assertEqual([v.version for v in history], [1, 2])
        self.assertIsInstance(history[0], SecretVersionRecord)

    def test_duplicate_snapshot_version_is_rejected(self):
        SecretSnapshot.objects.create(workspace=self.workspace, version=1, secrets=[])
        with patch.object(DjangoSecretRepository, 'latest_snapshot', return_value=None):
            with self.assertRaises(SnapshotError):
                self.service.take_snapshot(self.workspace_id)


class PushPayloadTests(SimpleTestCase):
    def test_parse_maps_fields(self):
        entry = push_payload_entry('K', 'V')
        entry.update({'secretCommentCiphertext': 'Yw==', 'secretCommentIV': 'aQ==',
                      'secretCommentTag': 'dA==', 'secretCommentHash': 'h'})

        secrets = parse_push_payload({'secrets': [entry]})

        self.assertEqual(secrets[0].type, 'shared')
        self.assertEqual(secrets[0].key.hash, content_hash('K'))
        self.assertEqual(secrets[0].value.iv, entry['secretValueIV'])
        self.assertEqual(secrets[0].comment.ciphertext, 'Yw==')

    def test_comment_is_optional(self):
        secrets = parse_push_payload({'secrets': [push_payload_entry('K', 'V')]})
        self.assertEqual(secrets[0].comment.ciphertext, '')

    def test_rejects_malformed_payloads(self):
        bad_payloads = [
            [],
            {'secrets': 'nope'},
            {'secrets': ['nope']},
            {'secrets': [push_payload_entry('K', 'V', type='team')]},
            {'secrets': [{**push_payload_entry('K', 'V'), 'secretKeyHash': ''}]},
            {'secrets': [{**push_payload_entry('K', 'V'), 'secretValueIV': 5}]},
        ]
        for payload in bad_payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(PayloadError):
                    parse_push_payload(payload)

    def test_sanitize_drops_empty_ciphertexts(self):
        keep = incoming('A', '1')
        no_key = IncomingSecret(type='shared', key=EncryptedMaterial('', 'i', 't', 'h'), value=material('v'))
        no_value = IncomingSecret(type='shared', key=material('k'), value=EncryptedMaterial('', 'i', 't', 'h'))
        self.assertEqual(sanitize_batch([keep, no_key, no_value]), [keep])


class WorkspaceSecretsViewTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email='member@example.com', password='pw')
        self.workspace = Workspace.objects.create(name='Acme')
        Environment.objects.create(workspace=self.workspace, name='Development', slug='dev')
        Membership.objects.create(workspace=self.workspace, user=self.user)
        self.url = reverse('workspace_secrets', kwargs={'workspace_id': self.workspace.id})

    def post(self, body):
        return self.client.post(self.url, data=json.dumps(body), content_type='application/json')

    def test_anonymous_request_is_rejected(self):
        response = self.client.get(self.url, {'environment': 'dev'})
        self.assertEqual(response.status_code, 401)

    def test_non_member_is_forbidden(self):
        outsider = User.objects.create_user(email='outsider@example.com', password='pw')
        self.client.force_login(outsider)
        response = self.post({'environment': 'dev', 'secrets': []})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(SecretSnapshot.objects.count(), 0)

    def test_unknown_environment_is_rejected(self):
        self.client.force_login(self.user)
        response = self.post({'environment': 'staging', 'secrets': []})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['message'], 'Failed to validate environment')

    def test_malformed_body_is_rejected(self):
        self.client.force_login(self.user)
        response = self.client.post(self.url, data='{not json', content_type='application/json')
        self.assertEqual(response.status_code, 400)
        response = self.post({'environment': 'dev', 'secrets': [{'type': 'team'}]})
        self.assertEqual(response.status_code, 400)

    def test_push_then_pull_for_cli(self):
        self.client.force_login(self.user)
        empty = {**push_payload_entry('', 'ignored'), 'secretKeyCiphertext': ''}
        response = self.post({
            'environment': 'dev',
            'secrets': [push_payload_entry('API_KEY', 'abc'), empty],
        })
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['added'], 1)
        self.assertEqual(body['snapshotVersion'], 1)

        response = self.client.get(self.url, {'environment': 'dev'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Cache-Control'], 'no-store, private')
        secrets = response.json()['secrets']
        self.assertEqual(len(secrets), 1)
        self.assertEqual(secrets[0]['secret_key_hash'], content_hash('API_KEY'))
        self.assertEqual(secrets[0]['version'], 1)

    def test_pull_for_other_channels_is_reformatted(self):
        self.client.force_login(self.user)
        self.post({'environment': 'dev', 'secrets': [push_payload_entry('API_KEY', 'abc')]})

        response = self.client.get(self.url, {'environment': 'dev', 'channel': 'web'})

        secret = response.json()['secrets'][0]
        self.assertEqual(secret['secret_key']['hash'], content_hash('API_KEY'))
        self.assertEqual(secret['workspace'], str(self.workspace.id))

    def test_engine_errors_become_500(self):
        self.client.force_login(self.user)
        with patch('secret_store.views.SecretService') as service_cls:
            service_cls.return_value.push.side_effect = ReconciliationError('Failed to push shared and personal secrets')
            response = self.post({'environment': 'dev', 'secrets': []})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {'message': 'Failed to push shared and personal secrets'})

    def test_push_records_client_ip(self):
        self.client.force_login(self.user)
        with patch('secret_store.views.SecretService') as service_cls:
            service_cls.return_value.push.return_value = MagicMock(
                added=0, updated=0, deleted=0, unchanged=0, snapshot_version=1,
            )
            self.client.post(
                self.url,
                data=json.dumps({'environment': 'dev', 'secrets': [], 'channel': 'web'}),
                content_type='application/json',
                REMOTE_ADDR='203.0.113.9',
            )
        kwargs = service_cls.return_value.push.call_args.kwargs
        self.assertEqual(kwargs['ip_address'], '203.0.113.9')
        self.assertEqual(kwargs['channel'], 'web')

    def test_other_methods_are_not_allowed(self):
        self.client.force_login(self.user)
        self.assertEqual(self.client.delete(self.url).status_code, 405)


class TakeSnapshotCommandTests(TestCase):
    def setUp(self):
        self.workspace = Workspace.objects.create(name='Acme')

    def test_writes_snapshot(self):
        out = StringIO()
        call_command('take_snapshot', str(self.workspace.id), stdout=out)
        self.assertIn('Snapshot v1 written with 0 secrets', out.getvalue())
        self.assertEqual(SecretSnapshot.objects.get().version, 1)

    def test_lists_snapshots(self):
        call_command('take_snapshot', str(self.workspace.id), stdout=StringIO())
        out = StringIO()
        call_command('take_snapshot', str(self.workspace.id), '--list', stdout=out)
        self.assertIn('v1', out.getvalue())

    def test_unknown_workspace(self):
        with self.assertRaises(CommandError):
            call_command('take_snapshot', 'a3c9d0a4-0000-4a44-9a55-2f1e5c1f7a10', stdout=StringIO())
        with self.assertRaises(CommandError):
            call_command('take_snapshot', 'not-a-uuid', stdout=StringIO())
