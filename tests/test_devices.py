from procauth.service.devices import DeviceTrustEngine
from procauth.storage.models import AccountStatus


def test_fingerprint_is_stable_and_input_sensitive():
    a = DeviceTrustEngine.fingerprint("Mozilla/5.0", "10.0.0.1", "device-1")
    b = DeviceTrustEngine.fingerprint("Mozilla/5.0", "10.0.0.1", "device-1")
    c = DeviceTrustEngine.fingerprint("Mozilla/5.0", "10.0.0.2", "device-1")

    assert a == b
    assert a != c
    assert len(a) == 64


def test_field_boundaries_are_framed():
    assert DeviceTrustEngine.fingerprint("a", "bc", None) != DeviceTrustEngine.fingerprint(
        "ab", "c", None
    )


def test_trust_is_idempotent(store):
    engine = DeviceTrustEngine(store)
    account = store.create_account("erin", "erin@example.com", "hash", status=AccountStatus.ACTIVE)
    digest = engine.fingerprint("agent", "10.0.0.1", None)

    assert engine.trust(account.id, digest) is True
    assert engine.trust(account.id, digest) is False

    refreshed = store.get_account(account.id)
    assert refreshed.trusted_devices == [digest]
    assert engine.is_trusted(refreshed, digest) is True
    assert engine.is_trusted(refreshed, engine.fingerprint("other", "10.0.0.1", None)) is False
