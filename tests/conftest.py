"""
Global test fixtures.

Every test gets its own SQLite database and NGINX directories under
``tmp_path``. NGINX itself is replaced by a scripted runner so the real
ReloadExecutor writes files and issues commands without a live server.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from core.activity_logger import ActivityLogger
from core.cert_lifecycle import CertificateLifecycleManager
from core.cert_repository import CertificateRepository
from core.config_generator import ConfigGenerator
from core.database import Database
from core.reconciler import Reconciler
from core.reload_executor import ReloadExecutor
from core.site_locks import SiteLocks
from core.site_repository import SiteRepository
from models.certificate import CertificateMaterial
from models.reload import ReloadMode
from models.site import SiteCreateRequest, Upstream

RENEWABLE_ISSUERS = ["Let's Encrypt", "ZeroSSL"]


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeNginxRunner:
    """
    Stands in for docker exec / the nginx binary.

    ``reject`` is consulted on every ``nginx -t``; returning a message
    fails the test. ``reload_errors`` fail queued ``nginx -s reload`` calls.
    """

    def __init__(self, mode: ReloadMode = ReloadMode.CONTAINER):
        self.mode = mode
        self.commands: list[list[str]] = []
        self.reject: Optional[Callable[[], Optional[str]]] = None
        self.reload_errors: list[str] = []
        self.restarts = 0
        self.delay = 0.0
        self.active = 0
        self.max_active = 0

    async def run(self, command: list[str]) -> tuple[int, str, str]:
        self.commands.append(list(command))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if command == ["nginx", "-t"]:
                error = self.reject() if self.reject else None
                if error:
                    return 1, "", error
                return 0, "", "nginx: configuration file /etc/nginx/nginx.conf test is successful"
            if command == ["nginx", "-s", "reload"] and self.reload_errors:
                return 1, "", self.reload_errors.pop(0)
            return 0, "", ""
        finally:
            self.active -= 1

    async def restart(self, timeout: int = 10) -> None:
        self.restarts += 1

    @property
    def reload_count(self) -> int:
        return len([c for c in self.commands if c == ["nginx", "-s", "reload"]])


def generate_certificate(
    common_name: str,
    sans: Optional[list[str]] = None,
    issuer_org: Optional[str] = None,
    issuer_cn: Optional[str] = "Test CA",
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    key_type: str = "ec",
    include_san: bool = True,
) -> tuple[str, str]:
    """Build a certificate and its private key as PEM strings."""
    if key_type == "rsa":
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    else:
        key = ec.generate_private_key(ec.SECP256R1())

    now = datetime.now(timezone.utc).replace(microsecond=0)
    not_before = not_before or now - timedelta(days=1)
    not_after = not_after or now + timedelta(days=90)

    issuer_attrs = []
    if issuer_org:
        issuer_attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, issuer_org))
    if issuer_cn:
        issuer_attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn))

    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(x509.Name(issuer_attrs))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if include_san:
        names = sans if sans is not None else [common_name]
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]), critical=False
        )

    cert = builder.sign(key, hashes.SHA256())
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return cert_pem, key_pem


class FakeCA:
    """CA client issuing short self-signed certificates stamped with an issuer organization."""

    def __init__(self, clock: FakeClock, issuer_org: str = "Let's Encrypt", validity_days: int = 90):
        self.clock = clock
        self.issuer_org = issuer_org
        self.validity_days = validity_days
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[tuple[str, str]] = []

    def _material(self, domain: str, sans: list[str]) -> CertificateMaterial:
        names = [domain] + [name for name in sans if name != domain]
        cert_pem, key_pem = generate_certificate(
            domain,
            sans=names,
            issuer_org=self.issuer_org,
            issuer_cn="R11",
            not_before=self.clock() - timedelta(hours=1),
            not_after=self.clock() + timedelta(days=self.validity_days),
        )
        return CertificateMaterial(certificate=cert_pem, private_key=key_pem, chain=None)

    async def issue(self, domain, sans=None, email=None, challenge_method="http-01") -> CertificateMaterial:
        self.calls.append(("issue", domain))
        if self.error:
            raise self.error
        return self._material(domain, sans or [])

    async def renew(self, domain, sans=None) -> CertificateMaterial:
        self.calls.append(("renew", domain))
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        return self._material(domain, sans or [])


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def cert_factory(clock):
    """Generate certificates relative to the fake clock."""

    def _factory(common_name: str, days_valid: int = 90, **kwargs) -> tuple[str, str]:
        kwargs.setdefault("not_before", clock() - timedelta(days=1))
        kwargs.setdefault("not_after", clock() + timedelta(days=days_valid))
        return generate_certificate(common_name, **kwargs)

    return _factory


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "proxy-manager.db"))
    await database.initialize()
    return database


@pytest.fixture
def nginx_dirs(tmp_path):
    dirs = {
        "available": tmp_path / "sites-available",
        "enabled": tmp_path / "sites-enabled",
        "ssl": tmp_path / "ssl",
    }
    for path in dirs.values():
        path.mkdir()
    return dirs


@pytest.fixture
def runner():
    return FakeNginxRunner()


@pytest.fixture
def executor(runner, nginx_dirs):
    return ReloadExecutor(
        runner=runner,
        sites_available_dir=str(nginx_dirs["available"]),
        sites_enabled_dir=str(nginx_dirs["enabled"]),
        ssl_dir=str(nginx_dirs["ssl"]),
        timeout=5,
        restart_fallback=False,
    )


@pytest.fixture
def fake_ca(clock):
    return FakeCA(clock)


@pytest.fixture
def lifecycle(fake_ca, clock):
    return CertificateLifecycleManager(ca_client=fake_ca, clock=clock, renewable_issuers=RENEWABLE_ISSUERS)


@pytest.fixture
def reconciler(db, clock, executor, lifecycle, nginx_dirs):
    return Reconciler(
        sites=SiteRepository(db),
        certificates=CertificateRepository(db, clock=clock),
        generator=ConfigGenerator(ssl_dir=str(nginx_dirs["ssl"])),
        executor=executor,
        lifecycle=lifecycle,
        activity=ActivityLogger(db),
        locks=SiteLocks(enabled=True),
        clock=clock,
    )


@pytest.fixture
def site_request():
    """Build a SiteCreateRequest with a single upstream."""

    def _build(name: str = "app.example.com", host: str = "10.0.0.5", port: int = 80, **kwargs):
        return SiteCreateRequest(name=name, upstreams=[Upstream(host=host, port=port)], **kwargs)

    return _build

