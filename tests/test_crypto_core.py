import pytest

from services.crypto_core import babyjub
from services.crypto_core.commitments import (
    identity_commitment,
    note_commitment,
    nullifier,
    parse_view_key,
    recipient_tag_hash,
    serialize_view_key,
)
from services.crypto_core.field import FIELD_MODULUS, from_bytes32, from_hex32, random_field, to_bytes32, to_hex32
from services.crypto_core.keys import derive_identity_secret, derive_view_keypair, view_keypair_from_seed
from services.crypto_core.merkle import (
    MerkleTree,
    build_tree,
    empty_path,
    path_for,
    verify_path,
    zero_hashes,
)
from services.crypto_core.note_cipher import (
    CIPHERTEXT_BYTES,
    build_amount_ciphertext,
    decrypt_note,
    encrypt_note,
    parse_ciphertext,
)
from services.crypto_core.poseidon import poseidon, poseidon2
from services.protocol.wallet import KeypairWallet

DEPTH = 8


# ---- field ----
def test_to_bytes32_is_big_endian_and_rejects_modulus():
    assert to_bytes32(1) == b"\x00" * 31 + b"\x01"
    assert from_bytes32(to_bytes32(FIELD_MODULUS - 1)) == FIELD_MODULUS - 1
    with pytest.raises(ValueError):
        to_bytes32(FIELD_MODULUS)
    with pytest.raises(ValueError):
        to_bytes32(-1)


def test_from_bytes32_rejects_wrong_length_and_overflow():
    with pytest.raises(ValueError):
        from_bytes32(b"\x01" * 31)
    with pytest.raises(ValueError):
        from_bytes32(b"\xff" * 32)


def test_hex32_accepts_prefix():
    v = random_field()
    assert from_hex32("0x" + to_hex32(v)) == v
    with pytest.raises(ValueError):
        from_hex32("abcd")


# ---- poseidon ----
def test_poseidon_is_deterministic_and_in_field():
    a, b = random_field(), random_field()
    h = poseidon([a, b])
    assert h == poseidon2(a, b)
    assert 0 <= h < FIELD_MODULUS


def test_poseidon_depends_on_order_and_arity():
    assert poseidon([1, 2]) != poseidon([2, 1])
    assert poseidon([1]) != poseidon([1, 0])
    assert poseidon([0, 0, 0]) != poseidon([0, 0])


def test_poseidon_rejects_bad_inputs():
    with pytest.raises(ValueError):
        poseidon([])
    with pytest.raises(ValueError):
        poseidon([FIELD_MODULUS])
    with pytest.raises(ValueError):
        poseidon(list(range(17)))


# ---- baby jubjub ----
def test_base8_is_on_curve_and_has_subgroup_order():
    assert babyjub.on_curve(babyjub.BASE8)
    assert babyjub.mul_base(babyjub.SUBGROUP_ORDER) == babyjub.IDENTITY


def test_scalar_mul_distributes_over_addition():
    p = babyjub.mul_base(7)
    q = babyjub.mul_base(11)
    assert babyjub.add(p, q) == babyjub.mul_base(18)
    assert babyjub.mul(p, 3) == babyjub.mul_base(21)


def test_require_point_rejects_off_curve():
    with pytest.raises(ValueError):
        babyjub.require_point((1, 2))


# ---- merkle ----
def test_empty_tree_root_is_top_zero_hash():
    root, _ = build_tree([], DEPTH)
    assert root == zero_hashes(DEPTH)[DEPTH]


def test_single_leaf_root_chains_zero_hashes():
    zeros = zero_hashes(DEPTH)
    node = 42
    for level in range(DEPTH):
        node = poseidon2(node, zeros[level])
    assert build_tree([42], DEPTH)[0] == node


def test_every_path_verifies_against_root():
    leaves = [random_field() for _ in range(5)]
    root, _ = build_tree(leaves, DEPTH)
    for i, leaf in enumerate(leaves):
        path = path_for(leaves, i, DEPTH)
        assert path.root == root
        assert verify_path(leaf, path)
        assert not verify_path(leaf + 1, path)


def test_path_out_of_range_raises():
    with pytest.raises(IndexError):
        path_for([1, 2], 2, DEPTH)


def test_tree_rejects_overflow():
    with pytest.raises(ValueError):
        build_tree(list(range(5)), 2)


def test_merkle_tree_cache_follows_appends():
    tree = MerkleTree([1, 2], DEPTH)
    before = tree.root
    assert tree.append(3) == 2
    assert tree.root == build_tree([1, 2, 3], DEPTH)[0] != before
    tree.truncate(2)
    assert tree.root == before


def test_empty_path_is_all_zero():
    path = empty_path(DEPTH)
    assert path.siblings == (0,) * DEPTH
    assert path.directions == (0,) * DEPTH


# ---- commitments and keys ----
def test_commitment_rejects_amount_over_u64():
    with pytest.raises(ValueError):
        note_commitment(1 << 64, 1, 1)
    assert note_commitment((1 << 64) - 1, 1, 1) == poseidon([(1 << 64) - 1, 1, 1])


def test_nullifier_and_identity_commitment_shapes():
    assert nullifier(5, 3) == poseidon([5, 3])
    assert nullifier(5, 3) != nullifier(5, 4)
    assert identity_commitment(9) == poseidon([9])


def test_view_key_serialization_round_trip():
    vk = view_keypair_from_seed(b"\x01" * 32)
    text = serialize_view_key(vk.pubkey)
    assert parse_view_key(text) == vk.pubkey
    with pytest.raises(ValueError):
        parse_view_key("nothex")
    with pytest.raises(ValueError):
        parse_view_key(f"{to_hex32(1)}:{to_hex32(2)}")


def test_wallet_derived_keys_are_deterministic_per_wallet():
    w1, w2 = KeypairWallet.generate(), KeypairWallet.generate()
    assert derive_view_keypair(w1.address, w1.sign_message) == derive_view_keypair(w1.address, w1.sign_message)
    assert derive_view_keypair(w1.address, w1.sign_message) != derive_view_keypair(w2.address, w2.sign_message)
    s1 = derive_identity_secret("prog", w1.address, w1.sign_message)
    assert s1 == derive_identity_secret("prog", w1.address, w1.sign_message)
    assert s1 != derive_identity_secret("other", w1.address, w1.sign_message)


def test_view_key_index_selects_distinct_keys():
    seed = b"\x07" * 32
    k0, k1 = view_keypair_from_seed(seed, 0), view_keypair_from_seed(seed, 1)
    assert k0.pubkey != k1.pubkey
    assert k0.pubkey == babyjub.mul_base(k0.secret)
    assert k0.tag_hash == recipient_tag_hash(k0.pubkey)


# ---- ECIES ----
def test_encrypted_note_opens_with_recipient_key():
    vk = view_keypair_from_seed(b"\x02" * 32)
    randomness = random_field()
    ct = encrypt_note(vk.pubkey, 1234, randomness)
    blob = ct.to_bytes()
    assert len(blob) == CIPHERTEXT_BYTES
    assert decrypt_note(vk.secret, parse_ciphertext(blob)) == (1234, randomness)


def test_wrong_key_does_not_recover_amount():
    vk = view_keypair_from_seed(b"\x02" * 32)
    other = view_keypair_from_seed(b"\x03" * 32)
    ct = encrypt_note(vk.pubkey, 1234, 99)
    assert decrypt_note(other.secret, ct) != (1234, 99)


def test_decrypt_rejects_off_curve_c1():
    vk = view_keypair_from_seed(b"\x02" * 32)
    ct = encrypt_note(vk.pubkey, 5, 6)
    bad = parse_ciphertext(to_bytes32(1) + to_bytes32(2) + ct.to_bytes()[64:])
    with pytest.raises(ValueError):
        decrypt_note(vk.secret, bad)


def test_parse_ciphertext_checks_length():
    with pytest.raises(ValueError):
        parse_ciphertext(b"\x00" * 127)


def test_amount_ciphertext_binds_payee_tag():
    vk = view_keypair_from_seed(b"\x04" * 32)
    amt = build_amount_ciphertext(vk.pubkey, 500)
    assert amt.payee_tag_hash == vk.tag_hash
    assert decrypt_note(vk.secret, parse_ciphertext(amt.ciphertext)) == (500, amt.randomness)
