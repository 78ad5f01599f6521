#!/usr/bin/env python
"""
Tests del motor de deltas (delta_mirror.py)
===========================================

1. Checksum rodante (valores conocidos, actualización O(1))
2. Firmas (bloques, truncado, validación)
3. Deltas (ida y vuelta, identidad, desempate, fusión de copias)
4. Aplicación de parches (rangos, tamaño declarado)
"""

import os
import random
import shutil
import tempfile
import unittest

from delta_mirror import (
    MAX_BLOCK_SIZE,
    Checksum,
    ChecksumRegistry,
    ChecksumType,
    Config,
    CopyOp,
    DecodeError,
    DeltaEngine,
    InsertOp,
    Patch,
    RangeError,
    Signature,
    BlockChecksum,
    ValidationError,
    apply_patch,
    build_signature,
    compute_delta,
    hash_bytes,
    hash_file,
)


def random_bytes(n, seed=0):
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(n))


class TestRollingChecksum(unittest.TestCase):
    """Tests del checksum débil"""

    def test_known_value(self):
        """Valor conocido para b'abc'"""
        # s1 = 97+98+99 = 294, s2 = 97+195+294 = 586
        self.assertEqual(Checksum.rolling_checksum(b'abc'), 0x024a0126)

    def test_empty(self):
        self.assertEqual(Checksum.rolling_checksum(b''), 0)

    def test_unrolled_loop_matches_definition(self):
        """El bucle de 4 bytes coincide con la definición directa"""
        data = random_bytes(103, seed=1)
        s1 = s2 = 0
        for b in data:
            s1 = (s1 + b) & 0xFFFF
            s2 = (s2 + s1) & 0xFFFF
        self.assertEqual(Checksum.rolling_checksum(data), s1 | (s2 << 16))

    def test_rolling_update_equals_recompute(self):
        """Deslizar la ventana da lo mismo que recalcular"""
        data = random_bytes(200, seed=2)
        window = 16
        s1, s2 = Checksum.checksum_components(Checksum.rolling_checksum(data, 0, window))
        for i in range(1, len(data) - window + 1):
            s1, s2 = Checksum.rolling_update(data[i - 1], data[i + window - 1], s1, s2, window)
            self.assertEqual(Checksum.combine_checksum(s1, s2),
                             Checksum.rolling_checksum(data, i, window))

    def test_rolling_shrink_equals_recompute(self):
        """Encoger la ventana al final del buffer"""
        data = random_bytes(20, seed=3)
        s1, s2 = Checksum.checksum_components(Checksum.rolling_checksum(data))
        for i in range(1, len(data)):
            s1, s2 = Checksum.rolling_shrink(data[i - 1], s1, s2, len(data) - i + 1)
            self.assertEqual(Checksum.combine_checksum(s1, s2),
                             Checksum.rolling_checksum(data, i, len(data) - i))


class TestHashing(unittest.TestCase):
    """Tests de hashes de contenido"""

    def tearDown(self):
        Config.reset_defaults()

    def test_sha256_default(self):
        self.assertEqual(
            hash_bytes(b'abc').hex(),
            'ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad',
        )

    def test_all_algorithms_have_declared_length(self):
        """Cada algoritmo produce un digest de la longitud registrada"""
        for checksum_type in ChecksumType:
            with self.subTest(algorithm=checksum_type.value):
                digest = hash_bytes(b'payload', checksum_type)
                self.assertEqual(len(digest), ChecksumRegistry.get_digest_length(checksum_type))

    def test_algorithm_names(self):
        self.assertEqual(hash_bytes(b'x', 'XXH3'), hash_bytes(b'x', ChecksumType.XXH3))

    def test_unknown_algorithm(self):
        with self.assertRaises(ValidationError):
            hash_bytes(b'x', 'crc32')

    def test_hash_file_streams_in_chunks(self):
        """hash_file con chunks pequeños coincide con hash_bytes"""
        tmp = tempfile.mkdtemp()
        try:
            path = os.path.join(tmp, 'data.bin')
            data = random_bytes(1000, seed=4)
            with open(path, 'wb') as f:
                f.write(data)
            Config.CHUNK_SIZE_STREAMING = 7
            for algorithm in ('sha256', 'xxh128', 'blake2b'):
                with self.subTest(algorithm=algorithm):
                    self.assertEqual(hash_file(path, algorithm), hash_bytes(data, algorithm))
        finally:
            shutil.rmtree(tmp)


class TestSignature(unittest.TestCase):
    """Tests de construcción de firmas"""

    def test_empty_data_has_no_blocks(self):
        sig = build_signature(b'', block_size=16)
        self.assertEqual(sig.file_size, 0)
        self.assertEqual(sig.num_blocks, 0)

    def test_block_layout(self):
        """El último bloque puede ser más corto"""
        data = random_bytes(50, seed=5)
        sig = build_signature(data, block_size=16)
        self.assertEqual(sig.num_blocks, 4)
        self.assertEqual([b.offset for b in sig.blocks], [0, 16, 32, 48])
        self.assertEqual([b.length for b in sig.blocks], [16, 16, 16, 2])
        self.assertEqual(sig.remainder, 2)

    def test_exact_multiple(self):
        sig = build_signature(b'A' * 64, block_size=16)
        self.assertEqual(sig.num_blocks, 4)
        self.assertEqual(sig.blocks[-1].length, 16)

    def test_strong_checksum_truncated(self):
        data = random_bytes(40, seed=6)
        sig = build_signature(data, block_size=16, strong_hash_size=3)
        full = ChecksumRegistry.get_checksum_function(ChecksumType.MD5)(data[:16])
        self.assertEqual(sig.blocks[0].strong_checksum, full[:3])
        self.assertTrue(all(len(b.strong_checksum) == 3 for b in sig.blocks))

    def test_weak_checksum_per_block(self):
        data = random_bytes(40, seed=7)
        sig = build_signature(data, block_size=16)
        self.assertEqual(sig.blocks[2].weak_checksum, Checksum.rolling_checksum(data[32:]))

    def test_defaults_from_config(self):
        engine = DeltaEngine()
        self.assertEqual(engine.block_size, Config.DEFAULT_BLOCK_SIZE)
        self.assertEqual(engine.strong_hash_size, Config.DEFAULT_STRONG_HASH_SIZE)
        self.assertEqual(engine.strong_type, ChecksumType.MD5)

    def test_invalid_block_size(self):
        for block_size in (0, -1, MAX_BLOCK_SIZE + 1):
            with self.subTest(block_size=block_size):
                with self.assertRaises(ValidationError):
                    DeltaEngine(block_size=block_size)

    def test_invalid_strong_hash_size(self):
        """md5 tiene 16 bytes de digest"""
        for size in (0, 17):
            with self.subTest(size=size):
                with self.assertRaises(ValidationError):
                    DeltaEngine(block_size=16, strong_hash_size=size)
        DeltaEngine(block_size=16, strong_hash_size=16)

    def test_rejects_non_bytes(self):
        with self.assertRaises(ValidationError):
            build_signature('text', block_size=16)


class TestDelta(unittest.TestCase):
    """Tests del codificador de deltas"""

    BS = 16

    def roundtrip(self, original, target, block_size=None, **kwargs):
        sig = build_signature(original, block_size=block_size or self.BS, **kwargs)
        patch = compute_delta(sig, target)
        self.assertEqual(apply_patch(original, patch), target)
        self.assertEqual(patch.target_size, len(target))
        return patch

    def test_roundtrip_edits(self):
        """Ediciones típicas reconstruyen el destino exacto"""
        base = random_bytes(500, seed=10)
        cases = {
            'insert_middle': base[:200] + b'NEW STUFF' + base[200:],
            'delete_middle': base[:100] + base[180:],
            'append': base + b'tail',
            'prepend': b'head' + base,
            'truncate': base[:123],
            'replace_all': random_bytes(300, seed=11),
            'empty_target': b'',
            'reorder': base[250:] + base[:250],
        }
        for name, target in cases.items():
            with self.subTest(case=name):
                self.roundtrip(base, target)

    def test_roundtrip_other_strong_types(self):
        base = random_bytes(300, seed=12)
        target = base[:150] + b'xyz' + base[150:]
        for strong_type, size in (('xxh3', 8), ('sha256', 32), ('blake2b', 4), ('xxh128', 16)):
            with self.subTest(strong_type=strong_type):
                patch = self.roundtrip(base, target, strong_type=strong_type, strong_hash_size=size)
                self.assertGreater(patch.copied_bytes, 0)

    def test_identity_is_single_copy(self):
        """Un archivo idéntico produce una sola copia"""
        data = random_bytes(self.BS * 10, seed=13)
        patch = self.roundtrip(data, data)
        self.assertEqual(patch.instructions, (CopyOp(0, len(data)),))

    def test_identity_with_short_last_block(self):
        """La ventana se encoge al final para casar el último bloque corto"""
        data = random_bytes(self.BS * 10 + 5, seed=14)
        patch = self.roundtrip(data, data)
        self.assertEqual(patch.instructions, (CopyOp(0, len(data)),))

    def test_empty_source(self):
        target = random_bytes(40, seed=15)
        patch = self.roundtrip(b'', target)
        self.assertEqual(patch.instructions, (InsertOp(target),))

    def test_empty_source_and_target(self):
        patch = self.roundtrip(b'', b'')
        self.assertEqual(patch.instructions, ())

    def test_single_byte_change(self):
        """Un byte cambiado: copia, un literal de un bloque, copia"""
        bs = self.BS
        original = random_bytes(bs * 8, seed=16)
        target = bytearray(original)
        target[3 * bs + 5] ^= 0xFF
        target = bytes(target)

        patch = self.roundtrip(original, target)
        self.assertEqual(patch.instructions, (
            CopyOp(0, 3 * bs),
            InsertOp(target[3 * bs:4 * bs]),
            CopyOp(4 * bs, 4 * bs),
        ))
        self.assertEqual(patch.num_inserts, 1)
        self.assertLessEqual(patch.literal_bytes, bs)

    def test_lowest_index_wins(self):
        """Entre bloques iguales gana el de índice menor"""
        bs = self.BS
        a = random_bytes(bs, seed=17)
        b = random_bytes(bs, seed=18)
        original = b + a + a

        patch = self.roundtrip(original, a)
        self.assertEqual(patch.instructions, (CopyOp(bs, bs),))

        patch = self.roundtrip(original, a + a)
        self.assertEqual(patch.instructions, (CopyOp(bs, bs), CopyOp(bs, bs)))

    def test_contiguous_copies_merge(self):
        bs = self.BS
        original = random_bytes(bs * 3, seed=19)
        extra = b'new data at the end'
        patch = self.roundtrip(original, original + extra)
        self.assertEqual(patch.instructions, (CopyOp(0, 3 * bs), InsertOp(extra)))

    def test_non_contiguous_copies_do_not_merge(self):
        bs = self.BS
        original = random_bytes(bs * 3, seed=20)
        target = original[2 * bs:] + original[:bs]
        patch = self.roundtrip(original, target)
        self.assertEqual(patch.instructions, (CopyOp(2 * bs, bs), CopyOp(0, bs)))

    def test_stats(self):
        original = random_bytes(self.BS * 6, seed=21)
        target = original[:40] + b'#' * 30 + original[40:]
        patch = self.roundtrip(original, target)
        stats = patch.stats
        self.assertIsNotNone(stats)
        self.assertEqual(stats.matched_data + stats.literal_data, len(target))
        self.assertEqual(stats.matched_data, patch.copied_bytes)
        self.assertGreater(stats.efficiency, 0.5)

    def test_stats_disabled(self):
        Config.COLLECT_STATS = False
        try:
            patch = self.roundtrip(b'abc' * 20, b'abc' * 21)
            self.assertIsNone(patch.stats)
        finally:
            Config.reset_defaults()

    def test_delta_follows_signature_settings(self):
        """compute_delta usa los parámetros de la firma, no los del motor"""
        original = random_bytes(100, seed=22)
        sig = DeltaEngine(block_size=10, strong_type='sha1', strong_hash_size=20).build_signature(original)
        patch = DeltaEngine(block_size=4096).compute_delta(sig, original)
        self.assertEqual(patch.instructions, (CopyOp(0, 100),))

    def test_inconsistent_signature(self):
        """Tabla de bloques que no cubre file_size"""
        block = BlockChecksum(weak_checksum=0, strong_checksum=b'\x00' * 8, offset=0, length=16)
        sig = Signature(block_size=16, strong_hash_size=8, strong_type=ChecksumType.MD5,
                        file_size=100, blocks=(block,))
        with self.assertRaises(DecodeError):
            compute_delta(sig, b'data')

    def test_signature_with_gap(self):
        blocks = (
            BlockChecksum(0, b'\x00' * 8, 0, 16),
            BlockChecksum(0, b'\x00' * 8, 20, 4),
        )
        sig = Signature(16, 8, ChecksumType.MD5, 20, blocks)
        with self.assertRaises(DecodeError):
            compute_delta(sig, b'data')


class TestApplyPatch(unittest.TestCase):
    """Tests de aplicación de parches"""

    def test_plain_instruction_list(self):
        original = b'0123456789'
        result = apply_patch(original, [CopyOp(5, 5), InsertOp(b'--'), CopyOp(0, 3)])
        self.assertEqual(result, b'56789--012')

    def test_copy_out_of_range(self):
        with self.assertRaises(RangeError):
            apply_patch(b'short', [CopyOp(2, 10)])

    def test_negative_range(self):
        for op in (CopyOp(-1, 2), CopyOp(0, -1)):
            with self.subTest(op=op):
                with self.assertRaises(RangeError):
                    apply_patch(b'0123456789', [op])

    def test_copy_against_empty_original(self):
        with self.assertRaises(RangeError):
            apply_patch(b'', [CopyOp(0, 1)])

    def test_target_size_mismatch(self):
        patch = Patch(target_size=5, instructions=(InsertOp(b'abc'),))
        with self.assertRaises(RangeError):
            apply_patch(b'', patch)

    def test_patch_against_wrong_original(self):
        """Un parche calculado contra otro original más largo falla con RangeError"""
        original = random_bytes(64, seed=30)
        patch = compute_delta(build_signature(original, block_size=16), original)
        with self.assertRaises(RangeError):
            apply_patch(original[:32], patch)

    def test_unknown_instruction(self):
        with self.assertRaises(DecodeError):
            apply_patch(b'abc', [('copy', 0, 1)])

    def test_engine_static_apply(self):
        self.assertEqual(DeltaEngine.apply_patch(b'abc', [CopyOp(1, 2)]), b'bc')


if __name__ == '__main__':
    unittest.main()
