import hashlib

from graintrust.fingerprint import FINGERPRINT_LENGTH, fingerprint, get_public_url, is_fingerprint


def test_fingerprint_is_deterministic():
    assert fingerprint("https://cdn.example.com/farm/u1.jpg") == fingerprint("https://cdn.example.com/farm/u1.jpg")


def test_fingerprint_shape():
    value = fingerprint("u1")
    assert value.startswith("Qm")
    assert len(value) == FINGERPRINT_LENGTH
    assert value == "Qm" + hashlib.sha256(b"u1").hexdigest()[:44]
    assert is_fingerprint(value)


def test_fingerprint_distinct_over_large_sample():
    locators = [f"https://storage.example.com/batches/B{i // 14}/img-{i}.jpg" for i in range(50_000)]
    assert len({fingerprint(s) for s in locators}) == len(locators)


def test_fingerprint_of_empty_locator_still_hashes():
    assert is_fingerprint(fingerprint(""))


def test_is_fingerprint_rejects_other_strings():
    assert not is_fingerprint("")
    assert not is_fingerprint("Qm123")
    assert not is_fingerprint("Xx" + "a" * 44)


def test_public_url_resolution():
    assert get_public_url("ipfs://QmAbc") == "https://ipfs.io/ipfs/QmAbc"
    assert get_public_url("QmAbc", "https://gw.example.com/ipfs") == "https://gw.example.com/ipfs/QmAbc"
    assert get_public_url("https://cdn.example.com/a.jpg") == "https://cdn.example.com/a.jpg"
    assert get_public_url("") == ""
