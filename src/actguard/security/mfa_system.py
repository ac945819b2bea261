"""
ActGuard Multi-Factor Authentication
TOTP enrollment and verification with single-use encrypted backup codes.
"""

import base64
import io
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional

import pyotp
import qrcode

from actguard.core.clock import Clock
from actguard.core.config import settings
from actguard.core.encryption import SecretCipher
from actguard.core.logging import LoggerMixin
from actguard.database.store import SecurityStore
from .audit import AuditTrail
from .errors import CryptoError, MFAError
from .models import MfaEnrollment, SecurityEventType, new_id


LOW_BACKUP_CODES_THRESHOLD = 2


@dataclass
class EnrollmentSetup:
    """Everything the account holder needs to finish enrollment, shown once"""
    secret: str
    provisioning_uri: str
    qr_code_base64: str
    backup_codes: List[str]


@dataclass
class MfaVerification:
    is_valid: bool
    is_backup_code: bool = False
    remaining_backup_codes: Optional[int] = None


@dataclass
class MfaStatus:
    enabled: bool
    verified_at: Optional[datetime] = None
    backup_codes_count: int = 0
    recovery_email: Optional[str] = None


class RecoveryCodeVault(LoggerMixin):
    """
    MFA state machine per account: disabled -> pending enrollment -> enabled.

    Pending enrollment is held by the caller (secret and codes returned by
    begin_enrollment); nothing is persisted until confirm_enrollment succeeds.
    Backup code consumption is serialized per account.
    """

    def __init__(
        self,
        store: SecurityStore,
        cipher: SecretCipher,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None,
        issuer: Optional[str] = None,
        backup_code_count: Optional[int] = None,
    ):
        self.store = store
        self.cipher = cipher
        self.clock = clock or Clock()
        self.audit = audit or AuditTrail(store, self.clock)
        self.issuer = issuer or settings.MFA_ISSUER
        self.backup_code_count = backup_code_count or settings.MFA_BACKUP_CODE_COUNT

        # TOTP configuration
        self.totp_window = 1  # Allow 1 step before/after for clock drift
        self.qr_size = 10
        self.qr_border = 4

        # account id -> [lock, holders]; entries are dropped once nobody holds or waits
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _account_lock(self, account_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.setdefault(account_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[account_id]

    def begin_enrollment(self, account_id: str, label: Optional[str] = None) -> EnrollmentSetup:
        """Generate a TOTP secret, provisioning URI, QR code and backup codes"""
        if self.is_enabled(account_id):
            raise MFAError("MFA is already enabled for this account", "MFA_ALREADY_ENABLED")

        if label is None:
            account = self.store.get_account_by_id(account_id)
            label = account.email if account else account_id

        secret = pyotp.random_base32()
        provisioning_uri = pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=self.issuer)

        self.logger.info(f"MFA enrollment started for account {account_id}")
        return EnrollmentSetup(
            secret=secret,
            provisioning_uri=provisioning_uri,
            qr_code_base64=self._generate_qr_code(provisioning_uri),
            backup_codes=self.cipher.generate_backup_codes(self.backup_code_count),
        )

    def confirm_enrollment(
        self,
        account_id: str,
        secret: str,
        code: str,
        backup_codes: List[str],
        recovery_email: Optional[str] = None,
    ) -> MfaStatus:
        """Persist the enrollment once the first TOTP code checks out

        An enabled enrollment is never replaced here; it has to be disabled
        with a valid code first.
        """
        if not self._verify_totp(secret, code):
            self.logger.warning(f"MFA enrollment rejected for account {account_id}: invalid code")
            raise MFAError("Invalid verification code", "INVALID_MFA")

        enrollment = MfaEnrollment(
            account_id=account_id,
            enabled=True,
            totp_secret=self.cipher.encrypt(secret),
            backup_codes=self._encrypt_codes(backup_codes),
            verified_at=self.clock.now(),
            recovery_email=recovery_email,
        )
        with self._account_lock(account_id):
            if self.is_enabled(account_id):
                self.logger.warning(f"MFA enrollment rejected for account {account_id}: already enabled")
                raise MFAError("MFA is already enabled for this account", "MFA_ALREADY_ENABLED")
            self.store.upsert_mfa_enrollment(enrollment)

        self.audit.log(
            SecurityEventType.MFA_ENABLED,
            "Multi-factor authentication enabled",
            account_id=account_id,
            additional_data={"backup_codes": len(backup_codes)},
        )
        self.logger.info(f"MFA enabled for account {account_id}")
        return self.status(account_id)

    def verify(
        self,
        account_id: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> MfaVerification:
        """Check a TOTP code, falling back to consuming a backup code"""
        enrollment = self.store.get_mfa_enrollment(account_id)
        if enrollment is None or not enrollment.enabled or not enrollment.totp_secret:
            raise MFAError("MFA is not enabled for this account", "MFA_NOT_ENABLED")

        code = (code or "").strip()

        try:
            secret = self.cipher.decrypt(enrollment.totp_secret)
        except CryptoError as e:
            self.logger.error(f"Stored TOTP secret unreadable for account {account_id}: {e}")
            raise MFAError("MFA verification unavailable", "MFA_SECRET_UNREADABLE")

        if self._verify_totp(secret, code):
            self._mark_used(account_id)
            self._log_verified(account_id, ip_address, user_agent, is_backup_code=False)
            return MfaVerification(is_valid=True)

        remaining = self._consume_backup_code(account_id, code)
        if remaining is None:
            self.logger.warning(f"MFA verification failed for account {account_id}")
            return MfaVerification(is_valid=False)

        self._log_verified(account_id, ip_address, user_agent, is_backup_code=True, remaining=remaining)
        if remaining <= LOW_BACKUP_CODES_THRESHOLD:
            self.logger.warning(
                f"Account {account_id} has only {remaining} backup codes left; regenerate soon"
            )
        return MfaVerification(is_valid=True, is_backup_code=True, remaining_backup_codes=remaining)

    def disable(
        self,
        account_id: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Remove the enrollment after a successful verification"""
        if not self.verify(account_id, code, ip_address, user_agent).is_valid:
            raise MFAError("Invalid MFA code", "INVALID_MFA")

        self.store.delete_mfa_enrollment(account_id)
        self.audit.log(
            SecurityEventType.MFA_DISABLED,
            "Multi-factor authentication disabled",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(f"MFA disabled for account {account_id}")

    def regenerate_backup_codes(self, account_id: str, code: str) -> List[str]:
        """Replace the whole backup code set after a successful verification"""
        if not self.verify(account_id, code).is_valid:
            raise MFAError("Invalid MFA code", "INVALID_MFA")

        codes = self.cipher.generate_backup_codes(self.backup_code_count)
        with self._account_lock(account_id):
            enrollment = self.store.get_mfa_enrollment(account_id)
            if enrollment is None:
                raise MFAError("MFA is not enabled for this account", "MFA_NOT_ENABLED")
            enrollment.backup_codes = self._encrypt_codes(codes)
            enrollment.backup_codes_used_count = 0
            self.store.update_mfa_enrollment(enrollment)

        self.logger.info(f"Backup codes regenerated for account {account_id}")
        return codes

    def status(self, account_id: str) -> MfaStatus:
        enrollment = self.store.get_mfa_enrollment(account_id)
        if enrollment is None:
            return MfaStatus(enabled=False)
        return MfaStatus(
            enabled=enrollment.enabled,
            verified_at=enrollment.verified_at,
            backup_codes_count=len(enrollment.backup_codes),
            recovery_email=enrollment.recovery_email,
        )

    def is_enabled(self, account_id: str) -> bool:
        enrollment = self.store.get_mfa_enrollment(account_id)
        return bool(enrollment and enrollment.enabled)

    def _verify_totp(self, secret: str, code: str) -> bool:
        code = (code or "").strip()
        if not code.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(code, for_time=self.clock.now(), valid_window=self.totp_window)
        except Exception as e:
            self.logger.error(f"TOTP verification failed: {e}")
            return False

    def _consume_backup_code(self, account_id: str, code: str) -> Optional[int]:
        """Remove a matching backup code; returns how many remain, or None on no match"""
        candidate = code.upper().strip()
        if not candidate:
            return None

        with self._account_lock(account_id):
            enrollment = self.store.get_mfa_enrollment(account_id)
            if enrollment is None or not enrollment.backup_codes:
                return None

            for code_id, encrypted_code in enrollment.backup_codes.items():
                try:
                    if self.cipher.decrypt(encrypted_code) != candidate:
                        continue
                except CryptoError as e:
                    self.logger.warning(f"Failed to decrypt backup code {code_id}: {e}")
                    continue

                del enrollment.backup_codes[code_id]
                enrollment.backup_codes_used_count += 1
                enrollment.last_used_at = self.clock.now()
                self.store.update_mfa_enrollment(enrollment)
                return len(enrollment.backup_codes)

        return None

    def _mark_used(self, account_id: str) -> None:
        # Re-read under the lock so a concurrent backup code removal is not overwritten
        with self._account_lock(account_id):
            enrollment = self.store.get_mfa_enrollment(account_id)
            if enrollment is not None:
                enrollment.last_used_at = self.clock.now()
                self.store.update_mfa_enrollment(enrollment)

    def _encrypt_codes(self, codes: List[str]) -> Dict[str, str]:
        return {new_id(): self.cipher.encrypt(c.upper().strip()) for c in codes}

    def _log_verified(
        self,
        account_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        is_backup_code: bool,
        remaining: Optional[int] = None,
    ) -> None:
        details = {"method": "backup_code" if is_backup_code else "totp"}
        if remaining is not None:
            details["remaining_backup_codes"] = remaining
        self.audit.log(
            SecurityEventType.MFA_VERIFIED,
            "Backup code used" if is_backup_code else "TOTP code verified",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            additional_data=details,
        )

    def _generate_qr_code(self, provisioning_uri: str) -> str:
        """Generate QR code image as a PNG data URI"""
        try:
            qr = qrcode.QRCode(
                version=1,
                error_correction=qrcode.constants.ERROR_CORRECT_L,
                box_size=self.qr_size,
                border=self.qr_border,
            )
            qr.add_data(provisioning_uri)
            qr.make(fit=True)

            img = qr.make_image(fill_color="black", back_color="white")

            buffer = io.BytesIO()
            img.save(buffer, format="PNG")

            qr_base64 = base64.b64encode(buffer.getvalue()).decode()
            return f"data:image/png;base64,{qr_base64}"

        except Exception as e:
            self.logger.error(f"QR code generation failed: {e}")
            raise MFAError(f"QR code generation failed: {e}")
