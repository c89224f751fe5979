"""
NGINX configuration generator using Jinja2 templates.

Renders a Site (and its Certificate when SSL is enabled) into a
ConfigArtifact: the server configuration plus the TLS files it references.
Rendering is pure, so the same inputs always produce the same artifact.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

from config import settings
from models.certificate import Certificate
from models.reload import ConfigArtifact
from models.site import LoadBalancerAlgorithm, Site

logger = logging.getLogger(__name__)

# Default template directory
DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"
SITE_TEMPLATE = "site.conf.j2"

UPSTREAM_HOST_PATTERN = re.compile(r"^[A-Za-z0-9.\-:\[\]]+$")
SAFE_PATH_PATTERN = re.compile(r"^/[A-Za-z0-9._~/\-]*$")


class ConfigGeneratorError(Exception):
    """Base exception for config generator errors."""

    def __init__(self, message: str, site_name: Optional[str] = None):
        self.message = message
        self.site_name = site_name
        super().__init__(message)


class TemplateNotFoundError(ConfigGeneratorError):
    """Template file not found."""
    pass


def upstream_block_name(site_name: str) -> str:
    """NGINX upstream identifier for a site, e.g. api_example_com_backend."""
    return re.sub(r"[^a-z0-9]+", "_", site_name.lower()).strip("_") + "_backend"


class ConfigGenerator:
    """
    Generates NGINX configuration artifacts from sites.

    Validates the inputs the template cannot express safely and raises
    ConfigGeneratorError for anything NGINX would reject or misread.
    """

    def __init__(self, template_dir: Optional[Path] = None, ssl_dir: Optional[str] = None):
        """
        Initialize the config generator.

        Args:
            template_dir: Path to template directory. Uses default if not specified.
            ssl_dir: Directory NGINX reads certificate files from.
        """
        self.template_dir = template_dir or DEFAULT_TEMPLATE_DIR
        self.ssl_dir = Path(ssl_dir or settings.ssl_cert_dir)

        if not self.template_dir.exists():
            raise ConfigGeneratorError(
                f"Template directory not found: {self.template_dir}"
            )

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,  # NGINX configs don't need HTML escaping
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )

        logger.info(f"ConfigGenerator initialized with templates from {self.template_dir}")

    def generate(self, site: Site, certificate: Optional[Certificate] = None) -> ConfigArtifact:
        """
        Render the artifact for a site.

        Args:
            site: Site to render
            certificate: Bound certificate, required when SSL is enabled

        Returns:
            ConfigArtifact with server config and TLS files

        Raises:
            ConfigGeneratorError: If the site cannot be rendered
        """
        self._validate(site, certificate)

        try:
            template = self.env.get_template(SITE_TEMPLATE)
        except TemplateNotFound:
            raise TemplateNotFoundError("Site template not found", site_name=site.name)

        files: dict[str, str] = {}
        cert_path = key_path = None
        if site.ssl_enabled:
            cert_file = f"{site.name}.crt"
            key_file = f"{site.name}.key"
            fullchain = certificate.material.certificate.strip() + "\n"
            if certificate.material.chain:
                fullchain += certificate.material.chain.strip() + "\n"
            files[cert_file] = fullchain
            files[key_file] = certificate.material.private_key.strip() + "\n"
            cert_path = str(self.ssl_dir / cert_file)
            key_path = str(self.ssl_dir / key_file)

        lb = site.load_balancer
        content = template.render(
            server_name=site.name,
            upstream_name=upstream_block_name(site.name),
            upstreams=site.upstreams,
            algorithm=lb.algorithm.value if lb else LoadBalancerAlgorithm.ROUND_ROBIN.value,
            health_check=lb if lb and lb.health_check_enabled else None,
            backend_scheme=site.upstreams[0].protocol.value,
            ssl_verify=site.upstreams[0].ssl_verify,
            ssl_enabled=site.ssl_enabled,
            ssl_cert_path=cert_path,
            ssl_key_path=key_path,
            modsec_enabled=site.modsec_enabled,
            acme_challenge_dir=str(Path(settings.acme_challenge_dir).parent.parent),
        )

        logger.debug(f"Generated config for {site.name} (ssl={site.ssl_enabled})")
        return ConfigArtifact(name=site.name, content=content, files=files)

    def _validate(self, site: Site, certificate: Optional[Certificate]) -> None:
        if not site.upstreams:
            raise ConfigGeneratorError("Site must have at least one upstream", site_name=site.name)

        for upstream in site.upstreams:
            if not UPSTREAM_HOST_PATTERN.match(upstream.host):
                raise ConfigGeneratorError(f"Invalid upstream host: {upstream.host!r}", site_name=site.name)

        if len({u.protocol for u in site.upstreams}) > 1:
            raise ConfigGeneratorError(
                "All upstreams of a site must use the same protocol", site_name=site.name
            )

        lb = site.load_balancer
        if lb and lb.health_check_enabled and not SAFE_PATH_PATTERN.match(lb.health_check_path):
            raise ConfigGeneratorError(
                f"Invalid health check path: {lb.health_check_path!r}", site_name=site.name
            )

        if site.ssl_enabled and certificate is None:
            raise ConfigGeneratorError("SSL is enabled but no certificate is bound", site_name=site.name)


# Singleton instance
_config_generator: Optional[ConfigGenerator] = None


def get_config_generator() -> ConfigGenerator:
    """
    Get the global config generator instance.

    Returns:
        ConfigGenerator singleton instance
    """
    global _config_generator
    if _config_generator is None:
        _config_generator = ConfigGenerator()
    return _config_generator
