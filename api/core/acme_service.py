"""
ACME client for Let's Encrypt certificate issuance and renewal.

Uses the acme library over HTTP-01 challenges. Failures are classified
into the closed CAErrorKind set so callers can tell rate limits and
not-yet-due answers apart from everything else.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import josepy as jose
from acme import challenges, client, messages
from acme import errors as acme_errors
from acme.client import ClientV2
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from config import settings
from core.database import Database, get_database
from core.errors import CAError, CAErrorKind, FatalCAError
from models.certificate import ACMEAccount, CertificateMaterial

logger = logging.getLogger(__name__)

RATE_LIMITED_TYPE = "urn:ietf:params:acme:error:rateLimited"
RATE_LIMIT_MARKERS = (
    "ratelimited",
    "rate limited",
    "rate limit",
    "retryafter",
    "retry-after",
    "too large",
    "too many certificates",
    "too many",
)
NOT_DUE_MARKERS = ("not due for renewal", "not yet due", "skip, next renewal")


def classify_acme_error(error: BaseException) -> CAErrorKind:
    """Map an ACME failure to a CAErrorKind using its problem type, then its message."""
    current: BaseException | None = error
    while current is not None:
        if getattr(current, "typ", None) == RATE_LIMITED_TYPE:
            return CAErrorKind.RATE_LIMITED
        current = current.__cause__

    text = str(error).lower()
    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return CAErrorKind.RATE_LIMITED
    if any(marker in text for marker in NOT_DUE_MARKERS):
        return CAErrorKind.NOT_YET_DUE
    return CAErrorKind.FATAL


def split_fullchain(fullchain_pem: str) -> tuple[str, str | None]:
    """Split a fullchain PEM into the leaf certificate and the intermediate chain."""
    marker = "-----END CERTIFICATE-----"
    parts = fullchain_pem.split(marker)
    cert_pem = parts[0].strip() + "\n" + marker + "\n"
    chain_pem = marker.join(parts[1:]).strip()
    return cert_pem, chain_pem + "\n" if chain_pem else None


class ACMEService:
    """
    Certificate authority client backed by an ACME directory.

    Handles account registration and persistence, orders and HTTP-01
    challenge files. ``issue`` and ``renew`` return CertificateMaterial
    or raise a CAError subclass.
    """

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self._client: ClientV2 | None = None
        self._account_key: jose.JWK | None = None
        self._challenge_dir = Path(settings.acme_challenge_dir)

    def reset(self):
        """Reset client state. Call after failures to prevent stale client reuse."""
        logger.info("Resetting ACME client state")
        self._client = None
        self._account_key = None

    @property
    def directory_url(self) -> str:
        """Get the ACME directory URL based on settings."""
        if settings.acme_use_staging:
            return settings.acme_staging_url
        return settings.acme_directory_url

    async def _load_account(self) -> ACMEAccount | None:
        row = await self.db.fetch_one(
            "SELECT * FROM acme_accounts WHERE directory_url = ? ORDER BY created_at DESC LIMIT 1",
            (self.directory_url,),
        )
        if not row:
            return None
        return ACMEAccount(
            id=row["id"],
            email=row["email"],
            directory_url=row["directory_url"],
            account_url=row["account_url"],
            private_key_pem=row["private_key_pem"],
        )

    async def _save_account(self, account: ACMEAccount) -> None:
        existing = await self.db.fetch_one(
            "SELECT id FROM acme_accounts WHERE directory_url = ? LIMIT 1",
            (account.directory_url,),
        )
        if existing:
            await self.db.update(
                "acme_accounts",
                existing["id"],
                {"email": account.email, "account_url": account.account_url, "private_key_pem": account.private_key_pem},
            )
        else:
            await self.db.insert(
                "acme_accounts",
                {
                    "id": account.id,
                    "email": account.email,
                    "directory_url": account.directory_url,
                    "account_url": account.account_url,
                    "private_key_pem": account.private_key_pem,
                },
            )
        logger.info(f"Saved ACME account for {account.directory_url}")

    async def _get_or_create_account_key(self) -> jose.JWK:
        if self._account_key:
            return self._account_key

        saved_account = await self._load_account()
        if saved_account:
            logger.info("Loading ACME account from database")
            private_key = serialization.load_pem_private_key(saved_account.private_key_pem.encode(), password=None)
            self._account_key = jose.JWKRSA(key=private_key)
            return self._account_key

        logger.info("Generating new ACME account key")
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self._account_key = jose.JWKRSA(key=private_key)
        return self._account_key

    async def _get_client(self) -> ClientV2:
        if self._client:
            return self._client

        account_key = await self._get_or_create_account_key()

        def create_client():
            net = client.ClientNetwork(account_key, user_agent="proxy-manager/1.0")
            directory = messages.Directory.from_json(net.get(self.directory_url).json())
            return ClientV2(directory, net=net)

        self._client = await asyncio.to_thread(create_client)
        return self._client

    async def register_account(self, email: str | None = None) -> None:
        """Register the ACME account, or look up the existing one, and persist its key."""
        acme_client = await self._get_client()
        account_key = await self._get_or_create_account_key()
        email_to_use = email or settings.acme_account_email or None

        def do_registration():
            regr = messages.NewRegistration.from_data(terms_of_service_agreed=True)
            if email_to_use:
                regr = regr.update(contact=(f"mailto:{email_to_use}",))
            try:
                return acme_client.new_account(regr)
            except acme_errors.ConflictError as conflict:
                logger.info(f"ACME account already exists at {conflict.location}, retrieving")
                existing = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
                return acme_client.query_registration(existing)

        account_resource = await asyncio.to_thread(do_registration)

        private_key_pem = account_key.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        await self._save_account(
            ACMEAccount(
                email=email_to_use,
                directory_url=self.directory_url,
                account_url=getattr(account_resource, "uri", None),
                private_key_pem=private_key_pem,
            )
        )

    def _make_key_and_csr(self, domains: list[str]) -> tuple[rsa.RSAPrivateKey, bytes]:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        builder = x509.CertificateSigningRequestBuilder()
        builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains]), critical=False
        )
        csr = builder.sign(private_key, hashes.SHA256())
        return private_key, csr.public_bytes(serialization.Encoding.PEM)

    def _challenge_path(self, token) -> Path:
        if isinstance(token, bytes):
            token = token.decode()
        return self._challenge_dir / token

    async def _obtain(self, domains: list[str], email: str | None) -> CertificateMaterial:
        await self.register_account(email)
        acme_client = await self._get_client()
        private_key, csr_pem = self._make_key_and_csr(domains)

        order = await asyncio.to_thread(acme_client.new_order, csr_pem)
        logger.info(f"Created ACME order for domains: {domains}")

        challenge_paths: list[Path] = []
        try:
            for authz in order.authorizations:
                challenge = next(
                    (c for c in authz.body.challenges if isinstance(c.chall, challenges.HTTP01)), None
                )
                if challenge is None:
                    raise FatalCAError(
                        f"No HTTP-01 challenge offered for {authz.body.identifier.value}",
                        suggestion="Server may only support DNS-01 challenges",
                    )

                response, validation = challenge.chall.response_and_validation(acme_client.net.key)
                path = self._challenge_path(challenge.chall.encode("token"))
                self._challenge_dir.mkdir(parents=True, exist_ok=True)
                path.write_text(validation)
                challenge_paths.append(path)

                await asyncio.to_thread(acme_client.answer_challenge, challenge, response)

            deadline = datetime.now() + timedelta(seconds=settings.acme_poll_timeout)

            def poll_and_finalize():
                validated = acme_client.poll_authorizations(order, deadline)
                return acme_client.finalize_order(validated, deadline)

            finalized = await asyncio.to_thread(poll_and_finalize)
        finally:
            for path in challenge_paths:
                path.unlink(missing_ok=True)

        cert_pem, chain_pem = split_fullchain(finalized.fullchain_pem)
        private_key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()

        logger.info(f"Successfully obtained certificate for {domains}")
        return CertificateMaterial(certificate=cert_pem, private_key=private_key_pem, chain=chain_pem)

    async def _request(self, domain: str, sans: list[str] | None, email: str | None) -> CertificateMaterial:
        domains = [domain] + [name for name in (sans or []) if name != domain]
        try:
            return await self._obtain(domains, email)
        except CAError:
            self.reset()
            raise
        except Exception as e:
            self.reset()
            kind = classify_acme_error(e)
            logger.error(f"ACME request failed for {domain} ({kind.value}): {type(e).__name__}: {e}")
            raise CAError.from_kind(kind, f"Failed to obtain certificate: {e}", resource=domain) from e

    async def issue(
        self,
        domain: str,
        sans: list[str] | None = None,
        email: str | None = None,
        challenge_method: str = "http-01",
    ) -> CertificateMaterial:
        """Obtain a new certificate for ``domain`` and its SANs."""
        if challenge_method != "http-01":
            raise FatalCAError(
                f"Unsupported challenge method: {challenge_method}",
                resource=domain,
                suggestion="Use the http-01 challenge",
            )
        return await self._request(domain, sans, email)

    async def renew(self, domain: str, sans: list[str] | None = None) -> CertificateMaterial:
        """Renew by ordering a fresh certificate for the same names."""
        return await self._request(domain, sans, None)


# Singleton instance
_acme_service: ACMEService | None = None


def get_acme_service() -> ACMEService:
    """Get the global ACME service instance."""
    global _acme_service
    if _acme_service is None:
        _acme_service = ACMEService()
    return _acme_service
