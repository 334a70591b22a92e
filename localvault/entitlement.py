"""
Combined license-or-trial entitlement.

Licensing supersedes the trial: once a license is valid for this device the
trial state is ignored. All status queries here are offline.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from localvault.license_service import LicenseInfo, LicenseService
from localvault.license_validator import is_trial_key
from localvault.licensing_api import ActivationResult
from localvault.trial_service import TrialInfo, TrialService


@dataclass(frozen=True)
class AppStatus:
    is_licensed: bool
    license_info: LicenseInfo
    trial_info: TrialInfo
    can_use_app: bool
    requires_purchase: bool


class EntitlementService:

    def __init__(self, license_service: LicenseService, trial_service: TrialService):
        self.license_service = license_service
        self.trial_service = trial_service

    def get_app_status(self, now: Optional[datetime] = None) -> AppStatus:
        license_info = self.license_service.get_license_info()
        trial_info = self.trial_service.get_trial_info(now)

        is_licensed = license_info.is_valid
        trial_ok = trial_info.is_trial_active and not trial_info.is_expired
        can_use = is_licensed or trial_ok
        return AppStatus(
            is_licensed=is_licensed,
            license_info=license_info,
            trial_info=trial_info,
            can_use_app=can_use,
            requires_purchase=not can_use,
        )

    def can_use_app(self, now: Optional[datetime] = None) -> bool:
        """True iff a license is valid here, or a trial is valid here and unexpired."""
        return self.get_app_status(now).can_use_app

    def should_block_access(self, now: Optional[datetime] = None) -> bool:
        return not self.can_use_app(now)

    def get_trial_info(self, now: Optional[datetime] = None) -> TrialInfo:
        return self.trial_service.get_trial_info(now)

    def activate(self, key: str) -> ActivationResult:
        """Route ``TRIA-`` keys to trial activation, everything else to the license server."""
        if is_trial_key(key):
            return self.trial_service.activate_trial(key)
        return self.license_service.activate(key)

    def transfer(self, key: str) -> ActivationResult:
        return self.license_service.transfer(key)
