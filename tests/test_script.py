"""Tests for the HTLC script codec and address helpers."""

import pytest

from htlc_resolver.errors import ScriptError
from htlc_resolver.utxo import script as htlc_script

# secp256k1 generator point, the public key of private key 1
PUBKEY_G = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")
# public key of private key 2
PUBKEY_2G = bytes.fromhex("02c6047f9441ed7d6d3045406e95c07cd85c778e4b8cef3ca7abac09b95c709ee5")
HASHLOCK = bytes.fromhex("66687aadf862bd776c8fc18b8e9f8e20089714856ee233b3902a591d0d5f2925")


class TestEncodeDecode:
    """Tests for building and parsing the two-branch script."""

    @pytest.mark.parametrize(
        "height",
        [1, 16, 17, 127, 128, 255, 256, 32767, 32768, 65535, 65536, 840_000, 499_999_999],
    )
    def test_recovers_every_field(self, height):
        script = htlc_script.encode(HASHLOCK, PUBKEY_G, PUBKEY_2G, height)
        parsed = htlc_script.decode(script)

        assert parsed is not None
        assert parsed.hashlock == HASHLOCK
        assert parsed.recipient_pubkey == PUBKEY_G
        assert parsed.refund_pubkey == PUBKEY_2G
        assert parsed.timelock_height == height
        assert htlc_script.decode_timelock(script) == height

    def test_layout(self):
        script = htlc_script.encode(HASHLOCK, PUBKEY_G, PUBKEY_2G, 840_000)
        assert script[:2] == bytes([htlc_script.OP_IF, htlc_script.OP_SHA256])
        assert script[2] == 32 and script[3:35] == HASHLOCK
        assert script[35] == htlc_script.OP_EQUALVERIFY
        assert script[-2:] == bytes([htlc_script.OP_CHECKSIG, htlc_script.OP_ENDIF])
        # 840000 = 0x0cd140 -> 3-byte little-endian push
        assert bytes.fromhex("0340d10cb175") in script

    def test_small_height_uses_opcode(self):
        script = htlc_script.encode(HASHLOCK, PUBKEY_G, PUBKEY_2G, 5)
        assert bytes([htlc_script.OP_ELSE, htlc_script.OP_1 + 4, htlc_script.OP_CHECKLOCKTIMEVERIFY]) in script

    def test_sign_bit_padding(self):
        """Heights whose top byte has the high bit set get a zero pad byte."""
        assert htlc_script.encode_script_num(128) == b"\x80\x00"
        assert htlc_script.encode_script_num(255) == b"\xff\x00"
        assert htlc_script.encode_script_num(256) == b"\x00\x01"
        assert htlc_script.decode_script_num(b"\x80\x00") == 128

    @pytest.mark.parametrize("size", [0, 20, 31, 33])
    def test_rejects_bad_hashlock(self, size):
        with pytest.raises(ScriptError):
            htlc_script.encode(b"\x11" * size, PUBKEY_G, PUBKEY_2G, 100)

    def test_rejects_uncompressed_key(self):
        uncompressed = b"\x04" + b"\x11" * 64
        with pytest.raises(ScriptError):
            htlc_script.encode(HASHLOCK, uncompressed, PUBKEY_2G, 100)

    def test_rejects_off_curve_key(self):
        with pytest.raises(ScriptError):
            htlc_script.encode(HASHLOCK, PUBKEY_G, b"\x02" + b"\xff" * 32, 100)

    @pytest.mark.parametrize("height", [0, -1, 500_000_000, 600_000_000])
    def test_rejects_height_out_of_range(self, height):
        with pytest.raises(ScriptError):
            htlc_script.encode(HASHLOCK, PUBKEY_G, PUBKEY_2G, height)

    def test_decode_rejects_other_scripts(self):
        p2pk = htlc_script.push_data(PUBKEY_G) + bytes([htlc_script.OP_CHECKSIG])
        assert htlc_script.decode(p2pk) is None
        assert htlc_script.decode_timelock(p2pk) is None
        assert htlc_script.decode(b"") is None

    def test_decode_rejects_truncated_script(self):
        script = htlc_script.encode(HASHLOCK, PUBKEY_G, PUBKEY_2G, 840_000)
        assert htlc_script.decode(script[:20]) is None
        assert htlc_script.decode(script[:-1]) is None

    def test_decode_rejects_swapped_opcode(self):
        script = bytearray(htlc_script.encode(HASHLOCK, PUBKEY_G, PUBKEY_2G, 840_000))
        script[1] = htlc_script.OP_HASH160
        assert htlc_script.decode(bytes(script)) is None


class TestAddresses:
    """Tests for address derivation (BIP173 vectors)."""

    P2PK_SCRIPT = htlc_script.push_data(PUBKEY_G) + bytes([htlc_script.OP_CHECKSIG])

    def test_p2wsh_testnet(self):
        assert htlc_script.derive_address(self.P2PK_SCRIPT, "testnet") == (
            "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7"
        )

    def test_p2wsh_mainnet(self):
        assert htlc_script.derive_address(self.P2PK_SCRIPT, "mainnet") == (
            "bc1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3qccfmv3"
        )

    def test_p2wpkh(self):
        assert htlc_script.pubkey_to_p2wpkh_address(PUBKEY_G, "mainnet") == (
            "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
        )
        assert htlc_script.pubkey_to_p2wpkh_address(PUBKEY_G, "testnet") == (
            "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"
        )

    def test_p2sh_prefixes(self):
        script = htlc_script.encode(HASHLOCK, PUBKEY_G, PUBKEY_2G, 100)
        assert htlc_script.derive_address(script, "testnet", kind="p2sh")[0] == "2"
        assert htlc_script.derive_address(script, "mainnet", kind="p2sh")[0] == "3"

    def test_htlc_address_prefix(self):
        script = htlc_script.encode(HASHLOCK, PUBKEY_G, PUBKEY_2G, 100)
        assert htlc_script.derive_address(script, "testnet").startswith("tb1q")
        assert htlc_script.derive_address(script, "mainnet").startswith("bc1q")
        assert htlc_script.derive_address(script, "regtest").startswith("bcrt1q")

    def test_unknown_network_or_kind(self):
        with pytest.raises(ScriptError):
            htlc_script.derive_address(self.P2PK_SCRIPT, "litecoin")
        with pytest.raises(ScriptError):
            htlc_script.derive_address(self.P2PK_SCRIPT, "testnet", kind="p2tr")

    def test_address_to_script_pubkey(self):
        script = htlc_script.encode(HASHLOCK, PUBKEY_G, PUBKEY_2G, 100)
        address = htlc_script.derive_address(script, "testnet")
        assert htlc_script.address_to_script_pubkey(address, "testnet") == (
            htlc_script.p2wsh_script_pubkey(script)
        )

        p2wpkh = htlc_script.pubkey_to_p2wpkh_address(PUBKEY_G, "testnet")
        assert htlc_script.address_to_script_pubkey(p2wpkh, "testnet") == bytes.fromhex(
            "0014751e76e8199196d454941c45d1b3a323f1433bd6"
        )

        p2sh = htlc_script.derive_address(script, "testnet", kind="p2sh")
        expected = b"\xa9\x14" + htlc_script.hash160(script) + b"\x87"
        assert htlc_script.address_to_script_pubkey(p2sh, "testnet") == expected

    def test_address_for_wrong_network(self):
        mainnet_p2sh = htlc_script.derive_address(self.P2PK_SCRIPT, "mainnet", kind="p2sh")
        with pytest.raises(ScriptError):
            htlc_script.address_to_script_pubkey(mainnet_p2sh, "testnet")

    def test_invalid_address(self):
        with pytest.raises(ScriptError):
            htlc_script.address_to_script_pubkey("not-an-address", "testnet")
