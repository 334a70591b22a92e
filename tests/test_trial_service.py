import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import DEVICE_ID, OTHER_DEVICE_ID, SIGNING_SECRET
from localvault.crypto_engine import sign_record
from localvault.errors import DeviceMismatchError, NetworkError, SignatureError
from localvault.licensing_api import ActivationResponse
from localvault.trial_service import (
    TRIAL_FILE_KEY,
    TRIAL_USED_KEY,
    TrialService,
    format_time_remaining,
)

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
TRIAL_KEY = "TRIA-AAAA-BBBB-CCCC-DDDD"


def signed_trial(start=NOW, device_id=DEVICE_ID, expires=None):
    record = {
        "trial_key": TRIAL_KEY,
        "device_id": device_id,
        "plan_type": "trial",
        "start_date": start.isoformat(),
        "expires_at": (expires or start + timedelta(days=7)).isoformat(),
    }
    return sign_record(record, SIGNING_SECRET)


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def trials(backend, fingerprint, api):
    return TrialService(backend, fingerprint, api=api, signing_secret=SIGNING_SECRET,
                        clock=lambda: NOW)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def test_no_trial(trials):
    info = trials.get_trial_info()
    assert info.is_trial_active is False
    assert info.has_trial_been_used is False
    assert info.time_remaining == "No trial activated"
    assert trials.can_start_trial()

def test_active_trial(trials):
    trials.store_trial(signed_trial(start=NOW - timedelta(days=2)))
    info = trials.get_trial_info()
    assert info.is_trial_active and not info.is_expired
    assert info.days_remaining == 5
    assert info.time_remaining == "5d 0h 0m 0s"
    assert info.trial_key == TRIAL_KEY
    assert trials.can_start_trial() is False
    assert trials.get_trial_progress() == 29

def test_expired_trial(trials):
    trials.store_trial(signed_trial(start=NOW - timedelta(days=8)))
    assert trials.is_trial_expired()
    assert trials.is_trial_active() is False
    assert trials.get_time_remaining() == "Trial expired"
    assert trials.get_trial_progress() == 100

def test_explicit_now_overrides_clock(trials):
    trials.store_trial(signed_trial(start=NOW))
    assert trials.is_trial_expired(NOW + timedelta(days=7, seconds=1))
    assert trials.is_trial_active(NOW + timedelta(days=6))

def test_tampered_stored_record_invalidates_trial(trials, backend):
    trials.store_trial(signed_trial(start=NOW - timedelta(days=1)))
    raw = json.loads(backend.get(TRIAL_FILE_KEY))
    raw["expires_at"] = (NOW + timedelta(days=365)).isoformat()
    backend.set(TRIAL_FILE_KEY, json.dumps(raw))

    info = trials.get_trial_info()
    assert info.is_trial_active is False
    assert info.is_expired is True
    assert info.time_remaining == "Trial invalidated - record failed verification"

def test_record_from_other_device_requires_transfer(trials, backend):
    backend.set(TRIAL_FILE_KEY, json.dumps(signed_trial(device_id=OTHER_DEVICE_ID)))
    info = trials.get_trial_info()
    assert info.is_trial_active is False
    assert info.requires_transfer is True
    assert info.time_remaining == "Trial invalidated - device changed"

def test_store_trial_rejects_bad_records(trials, backend):
    tampered = signed_trial()
    tampered["start_date"] = (NOW + timedelta(days=30)).isoformat()
    with pytest.raises(SignatureError):
        trials.store_trial(tampered)
    with pytest.raises(DeviceMismatchError):
        trials.store_trial(signed_trial(device_id=OTHER_DEVICE_ID))
    assert backend.get(TRIAL_FILE_KEY) is None

def test_format_time_remaining():
    assert format_time_remaining(1, 2, 3, 4) == "1d 2h 3m 4s"
    assert format_time_remaining(0, 2, 3, 4) == "2h 3m 4s"
    assert format_time_remaining(0, 0, 3, 4) == "3m 4s"
    assert format_time_remaining(0, 0, 0, 4) == "4s"


# ---------------------------------------------------------------------------
# Activation / lifecycle
# ---------------------------------------------------------------------------

def test_activate_trial_success(trials, api):
    api.activate_trial.return_value = ActivationResponse(
        status="activated", plan_type="trial", signed_record=signed_trial()
    )
    result = trials.activate_trial("tria-aaaa-bbbb-cccc-dddd")
    assert result.success
    api.activate_trial.assert_called_once_with(TRIAL_KEY, DEVICE_ID)
    assert trials.is_trial_active()

def test_activate_trial_bad_format_makes_no_call(trials, api):
    result = trials.activate_trial("TRIA-NOPE")
    assert result.success is False
    api.activate_trial.assert_not_called()

def test_activate_trial_network_error(trials, api):
    api.activate_trial.side_effect = NetworkError("offline")
    result = trials.activate_trial(TRIAL_KEY)
    assert result.success is False
    assert result.status == "network_error"

def test_activate_trial_unverifiable_record(trials, api, backend):
    record = signed_trial()
    record["plan_type"] = "personal"
    api.activate_trial.return_value = ActivationResponse(status="activated", signed_record=record)
    result = trials.activate_trial(TRIAL_KEY)
    assert result.success is False
    assert backend.get(TRIAL_FILE_KEY) is None

def test_activate_trial_without_api(backend, fingerprint):
    service = TrialService(backend, fingerprint, api=None, signing_secret=SIGNING_SECRET)
    assert service.activate_trial(TRIAL_KEY).success is False

def test_end_trial_remembers_usage(trials, backend):
    trials.store_trial(signed_trial())
    trials.end_trial()
    assert backend.get(TRIAL_FILE_KEY) is None
    assert backend.get(TRIAL_USED_KEY) == "true"
    info = trials.get_trial_info()
    assert info.has_trial_been_used and not info.is_trial_active
    assert info.time_remaining == "Trial ended"

def test_trial_cannot_restart_after_it_ended(trials, api):
    trials.store_trial(signed_trial())
    trials.end_trial()
    api.activate_trial.return_value = ActivationResponse(
        status="activated", plan_type="trial", signed_record=signed_trial()
    )

    result = trials.activate_trial(TRIAL_KEY)
    assert result.success is False
    assert "already been used" in result.error
    api.activate_trial.assert_not_called()
    assert trials.is_trial_active() is False

def test_reset_trial(trials):
    trials.store_trial(signed_trial())
    trials.reset_trial()
    assert trials.can_start_trial()

def test_expiration_callbacks_fire_once(trials):
    callback = MagicMock()
    trials.add_expiration_callback(callback)
    trials.store_trial(signed_trial(start=NOW - timedelta(days=10)))

    assert trials.check_and_handle_expiration() is True
    assert trials.check_and_handle_expiration() is True
    callback.assert_called_once()

    trials.remove_expiration_callback(callback)
    trials.end_trial()
    callback.assert_called_once()

def test_active_trial_does_not_fire(trials):
    callback = MagicMock()
    trials.add_expiration_callback(callback)
    trials.store_trial(signed_trial())
    assert trials.check_and_handle_expiration() is False
    callback.assert_not_called()

def test_failing_callback_is_reported(trials):
    trials.add_expiration_callback(MagicMock(side_effect=RuntimeError("boom")))
    ok = MagicMock()
    trials.add_expiration_callback(ok)
    with pytest.warns(RuntimeWarning, match="boom"):
        trials.end_trial()
    ok.assert_called_once()
