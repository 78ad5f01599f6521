#!/usr/bin/env python
"""
Tests del orquestador de sincronización
=======================================

Usa LocalTransport (en proceso) para contar las llamadas "de red".
"""

import io
import os
import random
import shutil
import stat
import tempfile
import unittest
from unittest import mock

from delta_mirror import (
    Config,
    DataIntegrityError,
    DecodeError,
    FilesystemError,
    MirrorError,
    PathTraversalError,
    ValidationError,
)
from mirror_sync import (
    FileState,
    Listing,
    ListingEntry,
    LocalTransport,
    MirrorService,
    SyncOptions,
    SyncOrchestrator,
    _ensure_parent_dir,
    persist_atomic,
)


def random_bytes(n, seed=0):
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(n))


def write(root, rel, data):
    path = os.path.join(root, *rel.split('/'))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)
    return path


def read(root, rel):
    with open(os.path.join(root, *rel.split('/')), 'rb') as f:
        return f.read()


def tree(root):
    """{relative path: bytes} for every file under root"""
    result = {}
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            full = os.path.join(dirpath, name)
            rel = os.path.relpath(full, root).replace(os.sep, '/')
            with open(full, 'rb') as f:
                result[rel] = f.read()
    return result


class _ListingOverride(LocalTransport):
    """LocalTransport serving a hand-made listing."""

    def __init__(self, service, listing):
        super().__init__(service)
        self.listing = listing

    def fetch_listing(self):
        return self.listing


class _CorruptPatches(LocalTransport):

    def fetch_patch(self, path, signature_bytes):
        super().fetch_patch(path, signature_bytes)
        return b'DMPT garbage'


class SyncTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.server_root = os.path.join(self.test_dir, 'server')
        self.client_root = os.path.join(self.test_dir, 'client')
        os.makedirs(self.server_root)
        os.makedirs(self.client_root)

        self.files = {
            'readme.txt': b'hello mirror\n' * 20,
            'data/blob.bin': random_bytes(3000, seed=1),
            'data/nested/deep/leaf.bin': random_bytes(700, seed=2),
            'empty.txt': b'',
        }
        for rel, data in self.files.items():
            write(self.server_root, rel, data)

        self.options = SyncOptions(block_size=64)
        Config.USE_COLORS = False

    def tearDown(self):
        Config.reset_defaults()
        shutil.rmtree(self.test_dir)

    def sync(self, options=None, transport=None):
        transport = transport or LocalTransport(MirrorService(self.server_root))
        report = SyncOrchestrator(transport, self.client_root, options or self.options).run()
        return report, transport


class TestSyncFlow(SyncTestCase):
    """Tests del flujo completo por archivo"""

    def test_initial_sync_into_empty_directory(self):
        """Los archivos nuevos se crean con sus directorios padre"""
        report, transport = self.sync()
        self.assertTrue(report.ok)
        self.assertEqual(tree(self.client_root), self.files)
        self.assertEqual(transport.list_calls, 1)
        # a missing local file is never up to date, even if the remote one is empty
        self.assertEqual(report.result_for('empty.txt').state, FileState.APPLIED)
        self.assertEqual(report.applied, len(self.files))

    def test_noop_sync_makes_no_patch_calls(self):
        self.sync()
        report, transport = self.sync()
        self.assertTrue(report.ok)
        self.assertEqual(report.up_to_date, len(self.files))
        self.assertEqual(transport.patch_calls, 0)

    def test_only_changed_file_is_patched(self):
        self.sync()
        changed = bytearray(self.files['data/blob.bin'])
        changed[1500] ^= 0x55
        write(self.server_root, 'data/blob.bin', bytes(changed))

        report, transport = self.sync()
        self.assertEqual(transport.patched_paths, ['data/blob.bin'])
        self.assertEqual(read(self.client_root, 'data/blob.bin'), bytes(changed))
        result = report.result_for('data/blob.bin')
        self.assertEqual(result.state, FileState.APPLIED)
        self.assertLess(result.patch_size, len(changed) // 4)

    def test_local_edits_are_overwritten(self):
        self.sync()
        write(self.client_root, 'readme.txt', b'local scribbles')
        report, _ = self.sync()
        self.assertTrue(report.ok)
        self.assertEqual(read(self.client_root, 'readme.txt'), self.files['readme.txt'])

    def test_without_hash_short_circuit(self):
        """Sin el atajo por hash el resultado es el mismo"""
        self.sync()
        options = SyncOptions(block_size=64, skip_unchanged=False)
        report, transport = self.sync(options)
        self.assertTrue(report.ok)
        self.assertEqual(transport.patch_calls, len(self.files))
        self.assertEqual(tree(self.client_root), self.files)

    def test_server_changes_after_start_are_mirrored(self):
        """Un servicio de larga vida entrega los cambios hechos tras arrancar"""
        transport = LocalTransport(MirrorService(self.server_root))
        self.sync(transport=transport)
        self.assertEqual(read(self.client_root, 'readme.txt'), self.files['readme.txt'])

        for version in (b'version two ', b'version six '):
            with self.subTest(version=version):
                new = version * 20
                write(self.server_root, 'readme.txt', new)
                report, _ = self.sync(transport=transport)
                self.assertTrue(report.ok)
                self.assertEqual(report.result_for('readme.txt').state, FileState.APPLIED)
                self.assertEqual(read(self.client_root, 'readme.txt'), new)

    def test_cached_listing_serves_startup_snapshot(self):
        service = MirrorService(self.server_root, rebuild_listing=False)
        self.sync(transport=LocalTransport(service))
        write(self.server_root, 'readme.txt', b'changed')
        report, _ = self.sync(transport=LocalTransport(service))
        self.assertEqual(report.result_for('readme.txt').state, FileState.UP_TO_DATE)

        service.refresh_listing()
        report, _ = self.sync(transport=LocalTransport(service))
        self.assertEqual(report.result_for('readme.txt').state, FileState.APPLIED)
        self.assertEqual(read(self.client_root, 'readme.txt'), b'changed')

    def test_concurrency_does_not_change_result(self):
        for jobs in (1, 8):
            with self.subTest(jobs=jobs):
                shutil.rmtree(self.client_root)
                os.makedirs(self.client_root)
                report, _ = self.sync(SyncOptions(block_size=64, concurrency=jobs))
                self.assertEqual(tree(self.client_root), self.files)
                self.assertEqual(
                    {r.path: r.state for r in report.results},
                    {
                        'readme.txt': FileState.APPLIED,
                        'data/blob.bin': FileState.APPLIED,
                        'data/nested/deep/leaf.bin': FileState.APPLIED,
                        'empty.txt': FileState.APPLIED,
                    },
                )

    def test_no_temp_files_left(self):
        self.sync()
        leftovers = [p for p in tree(self.client_root) if p.endswith('.dm-tmp')]
        self.assertEqual(leftovers, [])

    def test_invalid_concurrency(self):
        with self.assertRaises(ValidationError):
            SyncOrchestrator(LocalTransport(MirrorService(self.server_root)), self.client_root,
                             SyncOptions(concurrency=0))

    def test_invalid_block_size(self):
        with self.assertRaises(ValidationError):
            SyncOrchestrator(LocalTransport(MirrorService(self.server_root)), self.client_root,
                             SyncOptions(block_size=0))


class TestFailureIsolation(SyncTestCase):
    """Un archivo que falla no detiene a los demás"""

    def listing_with(self, *extra):
        base = MirrorService(self.server_root).list()
        return Listing(base.algorithm, base.entries + tuple(extra))

    def test_traversal_path_fails_alone(self):
        service = MirrorService(self.server_root)
        evil = ListingEntry('../escaped.txt', b'\x00' * 32)
        transport = _ListingOverride(service, self.listing_with(evil))

        report, _ = self.sync(transport=transport)
        self.assertFalse(report.ok)
        self.assertEqual(report.failed, 1)
        result = report.result_for('../escaped.txt')
        self.assertIsInstance(result.error, PathTraversalError)
        self.assertEqual(result.failed_at, FileState.UNCHECKED)
        self.assertFalse(os.path.exists(os.path.join(self.test_dir, 'escaped.txt')))
        self.assertEqual(tree(self.client_root), self.files)

    def test_missing_on_server_fails_alone(self):
        service = MirrorService(self.server_root)
        ghost = ListingEntry('ghost.txt', b'\x01' * 32)
        report, _ = self.sync(transport=_ListingOverride(service, self.listing_with(ghost)))
        result = report.result_for('ghost.txt')
        self.assertEqual(result.state, FileState.FAILED)
        self.assertIsInstance(result.error, FilesystemError)
        self.assertEqual(result.failed_at, FileState.SIGNATURE_BUILT)
        self.assertEqual(report.applied, len(self.files))

    def test_integrity_mismatch_writes_nothing(self):
        """El hash del índice no coincide: DataIntegrityError y nada escrito"""
        service = MirrorService(self.server_root)
        entries = tuple(
            ListingEntry(e.path, b'\xee' * 32) if e.path == 'readme.txt' else e
            for e in service.list()
        )
        transport = _ListingOverride(service, Listing(service.list().algorithm, entries))

        report, _ = self.sync(transport=transport)
        result = report.result_for('readme.txt')
        self.assertIsInstance(result.error, DataIntegrityError)
        self.assertEqual(result.failed_at, FileState.PATCH_FETCHED)
        self.assertFalse(os.path.exists(os.path.join(self.client_root, 'readme.txt')))
        self.assertEqual(read(self.client_root, 'data/blob.bin'), self.files['data/blob.bin'])

    def test_integrity_check_can_be_disabled(self):
        service = MirrorService(self.server_root)
        entries = tuple(
            ListingEntry(e.path, b'\xee' * 32) if e.path == 'readme.txt' else e
            for e in service.list()
        )
        transport = _ListingOverride(service, Listing(service.list().algorithm, entries))
        report, _ = self.sync(SyncOptions(block_size=64, verify=False), transport=transport)
        self.assertTrue(report.ok)
        self.assertEqual(read(self.client_root, 'readme.txt'), self.files['readme.txt'])

    def test_corrupt_patch(self):
        transport = _CorruptPatches(MirrorService(self.server_root))
        report, _ = self.sync(transport=transport)
        self.assertEqual(report.failed, len(self.files))
        for result in report.results:
            if result.state == FileState.FAILED:
                self.assertIsInstance(result.error, DecodeError)
        self.assertEqual(os.listdir(self.client_root), [])

    def test_cancel_before_run(self):
        orchestrator = SyncOrchestrator(LocalTransport(MirrorService(self.server_root)),
                                        self.client_root, self.options)
        orchestrator.cancel()
        report = orchestrator.run()
        self.assertEqual(report.failed, len(self.files))
        self.assertTrue(all(isinstance(r.error, MirrorError) for r in report.results))
        self.assertEqual(os.listdir(self.client_root), [])

    def test_print_summary(self):
        service = MirrorService(self.server_root)
        ghost = ListingEntry('ghost.txt', b'\x01' * 32)
        report, _ = self.sync(transport=_ListingOverride(service, self.listing_with(ghost)))
        out = io.StringIO()
        report.print_summary(file=out)
        text = out.getvalue()
        self.assertIn('[OK] data/blob.bin', text)
        self.assertIn('[OK] empty.txt', text)
        self.assertIn('[ERROR] ghost.txt', text)
        self.assertIn('Failed:       1', text)


class TestPersistAtomic(unittest.TestCase):
    """Tests de escritura atómica"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_creates_parents(self):
        path = os.path.join(self.test_dir, 'a', 'b', 'c.txt')
        persist_atomic(path, b'content')
        with open(path, 'rb') as f:
            self.assertEqual(f.read(), b'content')

    def test_replaces_and_keeps_mode(self):
        path = os.path.join(self.test_dir, 'script.sh')
        with open(path, 'wb') as f:
            f.write(b'old')
        os.chmod(path, 0o750)
        persist_atomic(path, b'new')
        with open(path, 'rb') as f:
            self.assertEqual(f.read(), b'new')
        self.assertEqual(stat.S_IMODE(os.stat(path).st_mode), 0o750)

    def test_failed_replace_cleans_up(self):
        path = os.path.join(self.test_dir, 'target.txt')
        with mock.patch('mirror_sync.os.replace', side_effect=OSError('disk on fire')):
            with self.assertRaises(FilesystemError):
                persist_atomic(path, b'data')
        self.assertEqual(os.listdir(self.test_dir), [])

    def test_parent_creation_retried_once(self):
        path = os.path.join(self.test_dir, 'p', 'file')
        real_makedirs = os.makedirs
        calls = []

        def racy_makedirs(name, exist_ok=False):
            calls.append(name)
            if len(calls) == 1:
                raise FileNotFoundError(2, 'parent vanished', name)
            return real_makedirs(name, exist_ok=exist_ok)

        with mock.patch('mirror_sync.os.makedirs', side_effect=racy_makedirs):
            _ensure_parent_dir(path)
        self.assertEqual(len(calls), 2)
        self.assertTrue(os.path.isdir(os.path.join(self.test_dir, 'p')))

    def test_parent_creation_gives_up_after_retry(self):
        path = os.path.join(self.test_dir, 'p', 'file')
        with mock.patch('mirror_sync.os.makedirs', side_effect=OSError('nope')) as fake:
            with self.assertRaises(FilesystemError):
                _ensure_parent_dir(path)
        self.assertEqual(fake.call_count, 2)


if __name__ == '__main__':
    unittest.main()
