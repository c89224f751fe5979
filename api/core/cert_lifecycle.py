"""
Certificate lifecycle rules.

Parsing PEM material, deriving status from the validity window, hostname
matching for uploads, renewal eligibility, and the calls out to the CA
client for issuance and renewal.
"""

import logging
import math
import re
import subprocess
from datetime import datetime, timedelta, timezone
from typing import Callable

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtensionOID, NameOID

from config import settings
from core.errors import (
    CAError,
    DomainMismatchError,
    ExpiredError,
    FatalCAError,
    InvalidInputError,
    KeyMismatchError,
    ParseError,
)
from models.certificate import (
    EMAIL_PATTERN,
    Certificate,
    CertificateMaterial,
    CertificateStatus,
    NameDetails,
    ParsedCertificate,
    RenewedCertificate,
)

logger = logging.getLogger(__name__)

EXPIRING_THRESHOLD_DAYS = 30
UNKNOWN_ISSUER = "Unknown"
OPENSSL_DATE_FORMAT = "%b %d %H:%M:%S %Y %Z"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_status(valid_to: datetime, now: datetime) -> CertificateStatus:
    """
    Derive certificate status from its expiry.

    expired when valid_to < now, expiring when it falls within the next
    30 days, valid otherwise.
    """
    if valid_to < now:
        return CertificateStatus.EXPIRED
    if valid_to < now + timedelta(days=EXPIRING_THRESHOLD_DAYS):
        return CertificateStatus.EXPIRING
    return CertificateStatus.VALID


def days_until_expiry(valid_to: datetime, now: datetime) -> int:
    """Whole days until expiry, rounded down (negative once expired)."""
    return math.floor((valid_to - now) / timedelta(days=1))


def matches_hostname(cert_name: str, target: str) -> bool:
    """
    Check whether a certificate name (CN or SAN) covers ``target``.

    ``*.example.com`` matches ``sub.example.com`` and ``example.com`` but
    not ``badexample.com`` or ``example.com.evil.org``.
    """
    cert = cert_name.lower()
    domain = target.lower()

    if cert == domain:
        return True

    if cert.startswith("*."):
        base = cert[2:]
        if domain.endswith(base):
            before_base = domain[: len(domain) - len(base)]
            if before_base == "" or before_base.endswith("."):
                return True

    # dev.example.com is covered by a *.example.com parent wildcard
    parts = domain.split(".")
    if len(parts) >= 3:
        wildcard_parent = "*." + ".".join(parts[1:])
        if cert == wildcard_parent:
            return True

    return False


def _name_details(name: x509.Name) -> NameDetails:
    def first(oid) -> str | None:
        attrs = name.get_attributes_for_oid(oid)
        return str(attrs[0].value) if attrs else None

    return NameDetails(
        common_name=first(NameOID.COMMON_NAME) or "",
        organization=first(NameOID.ORGANIZATION_NAME),
        country=first(NameOID.COUNTRY_NAME),
    )


def _issuer_label(details: NameDetails) -> str:
    return details.organization or details.common_name or UNKNOWN_ISSUER


def _parse_with_cryptography(pem: str) -> ParsedCertificate:
    cert = x509.load_pem_x509_certificate(pem.encode())

    subject_details = _name_details(cert.subject)
    issuer_details = _name_details(cert.issuer)

    sans: list[str] = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        sans = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    common_name = subject_details.common_name or (sans[0] if sans else "")
    if not sans and common_name:
        sans = [common_name]

    return ParsedCertificate(
        common_name=common_name,
        sans=sans,
        issuer=_issuer_label(issuer_details),
        subject=cert.subject.rfc4514_string(),
        subject_details=subject_details,
        issuer_details=issuer_details,
        serial_number=format(cert.serial_number, "x"),
        valid_from=cert.not_valid_before_utc,
        valid_to=cert.not_valid_after_utc,
    )


def _split_dn(dn: str) -> dict[str, str]:
    """Split an RFC 2253 distinguished name into attribute pairs."""
    attributes: dict[str, str] = {}
    for part in re.split(r"(?<!\\),", dn):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        attributes.setdefault(key.strip().upper(), value.strip().replace("\\", ""))
    return attributes


def _parse_with_openssl(pem: str) -> ParsedCertificate:
    result = subprocess.run(
        [
            "openssl", "x509", "-noout",
            "-subject", "-issuer", "-serial", "-startdate", "-enddate",
            "-ext", "subjectAltName",
            "-nameopt", "RFC2253",
        ],
        input=pem,
        capture_output=True,
        text=True,
        timeout=10,
    )
    if result.returncode != 0:
        raise ValueError(result.stderr.strip() or "openssl could not read the certificate")

    fields: dict[str, str] = {}
    sans: list[str] = []
    for line in result.stdout.splitlines():
        line = line.strip()
        if line.startswith("DNS:") or ", DNS:" in line:
            sans.extend(entry.strip()[4:] for entry in line.split(",") if entry.strip().startswith("DNS:"))
        elif "=" in line:
            key, value = line.split("=", 1)
            fields[key.strip()] = value.strip()

    subject = _split_dn(fields.get("subject", ""))
    issuer = _split_dn(fields.get("issuer", ""))
    subject_details = NameDetails(
        common_name=subject.get("CN", ""), organization=subject.get("O"), country=subject.get("C")
    )
    issuer_details = NameDetails(
        common_name=issuer.get("CN", ""), organization=issuer.get("O"), country=issuer.get("C")
    )

    common_name = subject_details.common_name or (sans[0] if sans else "")
    if not sans and common_name:
        sans = [common_name]

    valid_from = datetime.strptime(fields["notBefore"], OPENSSL_DATE_FORMAT).replace(tzinfo=timezone.utc)
    valid_to = datetime.strptime(fields["notAfter"], OPENSSL_DATE_FORMAT).replace(tzinfo=timezone.utc)

    return ParsedCertificate(
        common_name=common_name,
        sans=sans,
        issuer=_issuer_label(issuer_details),
        subject=fields.get("subject", ""),
        subject_details=subject_details,
        issuer_details=issuer_details,
        serial_number=fields.get("serial", "").lower() or None,
        valid_from=valid_from,
        valid_to=valid_to,
    )


def parse_certificate(pem: str) -> ParsedCertificate:
    """
    Extract identity and validity details from a PEM certificate.

    Uses the cryptography library first and falls back to the openssl CLI,
    which accepts some key algorithms and encodings the former rejects.

    Raises:
        ParseError: If neither strategy can read the certificate
    """
    try:
        return _parse_with_cryptography(pem)
    except Exception as primary_error:
        logger.debug(f"cryptography could not parse certificate, trying openssl: {primary_error}")
        try:
            return _parse_with_openssl(pem)
        except Exception as fallback_error:
            raise ParseError(
                f"Invalid certificate format: {primary_error}",
                suggestion="Provide a PEM-encoded X.509 certificate",
            ) from fallback_error


def check_key_pair(certificate_pem: str, private_key_pem: str) -> bool | None:
    """
    Compare the certificate's public key with the private key's.

    Returns:
        True or False when the keys could be compared, None when the
        comparison had to be deferred (unreadable or unsupported key).
    """
    try:
        cert = x509.load_pem_x509_certificate(certificate_pem.encode())
        private_key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
        cert_bytes = cert.public_key().public_bytes(
            encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
        key_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
    except Exception as e:
        logger.warning(f"Key pair validation could not be completed, deferring to NGINX: {e}")
        return None
    return cert_bytes == key_bytes


def validate_email(email: str | None) -> str | None:
    """
    Normalize an optional ACME contact email.

    Raises:
        InvalidInputError: If the address is malformed
    """
    if email is None:
        return None
    email = email.strip()
    if not email:
        return None
    if len(email) > 254:
        raise InvalidInputError("Email address is too long", suggestion="Use an address of at most 254 characters")
    local_part = email.split("@", 1)[0]
    if len(local_part) > 64:
        raise InvalidInputError("Email local part is too long", suggestion="Use a local part of at most 64 characters")
    if not EMAIL_PATTERN.match(email):
        raise InvalidInputError(f"Invalid email address: {email}")
    return email


class CertificateLifecycleManager:
    """
    Validation and renewal rules for certificates.

    The CA client is any object with async ``issue(domain, sans, email,
    challenge_method)`` and ``renew(domain, sans)`` methods returning
    CertificateMaterial and raising CAError subclasses.
    """

    def __init__(
        self,
        ca_client=None,
        clock: Callable[[], datetime] = utc_now,
        renewable_issuers: list[str] | None = None,
        renewal_threshold_days: int | None = None,
    ):
        self.ca_client = ca_client
        self.clock = clock
        self.renewable_issuers = renewable_issuers or list(settings.auto_renewable_issuers)
        self.renewal_threshold_days = (
            renewal_threshold_days if renewal_threshold_days is not None else settings.cert_renewal_days
        )

    def parse_certificate(self, pem: str) -> ParsedCertificate:
        return parse_certificate(pem)

    def compute_status(self, valid_to: datetime, now: datetime | None = None) -> CertificateStatus:
        return compute_status(valid_to, now or self.clock())

    def days_until_expiry(self, valid_to: datetime, now: datetime | None = None) -> int:
        return days_until_expiry(valid_to, now or self.clock())

    def matches_hostname(self, cert_name: str, target: str) -> bool:
        return matches_hostname(cert_name, target)

    def validate_upload(
        self,
        domain: str,
        certificate: str,
        private_key: str,
        chain: str | None = None,
    ) -> ParsedCertificate:
        """
        Validate uploaded material for ``domain``.

        Raises:
            ParseError: Certificate is unreadable
            ExpiredError: Certificate has already expired
            DomainMismatchError: Neither CN nor any SAN covers the domain
            KeyMismatchError: Private key belongs to another certificate
        """
        parsed = self.parse_certificate(certificate)
        logger.info(
            f"Parsed uploaded certificate: CN={parsed.common_name}, Issuer={parsed.issuer}, "
            f"Valid: {parsed.valid_from.isoformat()} - {parsed.valid_to.isoformat()}"
        )

        now = self.clock()
        if parsed.valid_to < now:
            raise ExpiredError(
                f"Certificate has already expired on {parsed.valid_to.isoformat()}",
                resource=domain,
                suggestion="Upload a certificate that is currently valid",
            )

        names = [parsed.common_name, *parsed.sans]
        if not any(self.matches_hostname(name, domain) for name in names if name):
            raise DomainMismatchError(
                f"Certificate is for '{parsed.common_name}' (SANs: {', '.join(parsed.sans)}) "
                f"but the site is '{domain}'",
                resource=domain,
                suggestion="Upload the correct certificate or one with a wildcard covering this domain",
            )

        if check_key_pair(certificate, private_key) is False:
            raise KeyMismatchError(
                "Private key does not match the certificate",
                resource=domain,
                suggestion="Ensure you upload the matching key pair",
            )

        remaining = days_until_expiry(parsed.valid_to, now)
        if remaining < EXPIRING_THRESHOLD_DAYS:
            logger.warning(f"Uploaded certificate for {domain} expires in {remaining} days")

        return parsed

    def is_renewal_eligible(self, cert: Certificate, now: datetime | None = None) -> bool:
        """A certificate is renewable once its issuer is allow-listed and it is within the window."""
        if cert.issuer not in self.renewable_issuers:
            return False
        return self.days_until_expiry(cert.valid_to, now) <= self.renewal_threshold_days

    async def issue(
        self,
        domain: str,
        sans: list[str] | None = None,
        email: str | None = None,
        challenge_method: str = "http-01",
    ) -> tuple[CertificateMaterial, ParsedCertificate]:
        """
        Obtain a new certificate from the CA and parse it.

        Raises:
            InvalidInputError: Malformed contact email
            CAError: The CA refused or failed the order
        """
        email = validate_email(email)
        material = await self.ca_client.issue(
            domain,
            sans=sans or [],
            email=email,
            challenge_method=challenge_method,
        )
        try:
            parsed = self.parse_certificate(material.certificate)
        except ParseError as e:
            raise FatalCAError(f"CA returned an unreadable certificate: {e.message}", resource=domain) from e
        return material, parsed

    async def renew(self, cert: Certificate) -> RenewedCertificate:
        """
        Renew ``cert`` through the CA client.

        Raises:
            RateLimitedError, NotYetDueError, FatalCAError
        """
        try:
            material = await self.ca_client.renew(cert.common_name, sans=cert.sans)
        except CAError:
            raise
        except Exception as e:
            raise FatalCAError(f"Renewal failed: {e}", resource=cert.common_name) from e

        try:
            parsed = self.parse_certificate(material.certificate)
        except ParseError as e:
            raise FatalCAError(
                f"CA returned an unreadable certificate: {e.message}", resource=cert.common_name
            ) from e

        return RenewedCertificate(certificate_id=cert.id, material=material, parsed=parsed)
