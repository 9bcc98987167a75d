"""
Configuration loading for the Ory MCP auth adapter.

Configuration is loaded from (priority order):
1. Explicit arguments
2. Config file (YAML) at config_path, /etc/mcp/ory.yaml, /config/ory.yaml or ./ory.yaml
3. Environment variables
4. Defaults

API keys may also be read from files (Kubernetes Secret mounts) through the
*_api_key_file keys.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ory_mcp.errors import ConfigurationError
from ory_mcp.oauth_provider import OryEndpoints, OryOptions, OryProvider, OryProviderType

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATHS = [
    "/etc/mcp/ory.yaml",
    "/config/ory.yaml",
    "./ory.yaml",
]


def load_ory_config_from_file(config_path: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Load Ory configuration from a YAML file.

    Searches in order:
    1. Provided config_path
    2. /etc/mcp/ory.yaml (default Kubernetes ConfigMap mount)
    3. /config/ory.yaml
    4. ./ory.yaml

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Dict with config or None if no readable file was found
    """
    search_paths = []

    if config_path:
        search_paths.append(config_path)

    search_paths.extend(DEFAULT_CONFIG_PATHS)

    for path_str in search_paths:
        path = Path(path_str)
        if path.exists() and path.is_file():
            try:
                logger.info(f"Loading Ory config from: {path}")
                with open(path, 'r') as f:
                    config = yaml.safe_load(f) or {}
                if not isinstance(config, dict):
                    logger.warning(f"Ignoring {path}: top level is not a mapping")
                    continue
                logger.info(f"✓ Successfully loaded Ory config from {path}")
                return config
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {path}: {e}")
                continue

    logger.debug("No Ory config file found, will use environment variables")
    return None


def _setting(config: Dict[str, Any], key: str, env_var: str, default: Any = None) -> Any:
    value = config.get(key)
    if value is None or value == "":
        value = os.getenv(env_var)
    if value is None or value == "":
        return default
    return value


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_api_key(config: Dict[str, Any], key: str, env_var: str) -> Optional[str]:
    """
    Load an API key from file or config.

    Priority:
    1. <key>_file (path to secret file)
    2. <key> (direct value)
    3. Environment variable env_var

    Returns:
        The key, or None if none is configured
    """
    key_file = config.get(f"{key}_file")
    if key_file:
        key_path = Path(key_file)
        if key_path.exists():
            value = key_path.read_text().strip()
            logger.info(f"✅ Loaded {key} from: {key_file}")
            return value
        logger.warning(f"{key} file not found: {key_file}")

    value = config.get(key) or os.getenv(env_var)
    if value:
        logger.debug(f"Loaded {key} from config/environment")
        return value
    return None


def build_endpoints(config: Dict[str, Any], base_url: str) -> OryEndpoints:
    """
    Build the OAuth2 endpoints, deriving unset ones from base_url.

    Revocation and registration can be switched off with enable_revocation
    and enable_registration.
    """
    base_url = base_url.rstrip('/')

    authorization_url = _setting(config, "authorization_url", "ORY_AUTHORIZATION_URL", f"{base_url}/oauth2/auth")
    token_url = _setting(config, "token_url", "ORY_TOKEN_URL", f"{base_url}/oauth2/token")

    revocation_url = None
    if _as_bool(_setting(config, "enable_revocation", "ORY_ENABLE_REVOCATION", True)):
        revocation_url = _setting(config, "revocation_url", "ORY_REVOCATION_URL", f"{base_url}/oauth2/revoke")

    registration_url = None
    if _as_bool(_setting(config, "enable_registration", "ORY_ENABLE_REGISTRATION", True)):
        registration_url = _setting(config, "registration_url", "ORY_REGISTRATION_URL", f"{base_url}/oauth2/register")

    return OryEndpoints(
        authorization_url=authorization_url,
        token_url=token_url,
        revocation_url=revocation_url,
        registration_url=registration_url,
    )


def build_provider_options(
    config: Optional[Dict[str, Any]] = None,
    provider_type: Optional[str] = None,
) -> OryOptions:
    """
    Build OryOptions from a config mapping and the environment.

    Required configuration:
    - network: project_url (ORY_PROJECT_URL) and project_api_key (ORY_PROJECT_API_KEY)
    - hydra: hydra_admin_url (HYDRA_ADMIN_URL), hydra_public_url (HYDRA_PUBLIC_URL)
      and hydra_api_key (HYDRA_API_KEY)

    Raises:
        ConfigurationError: If the provider type is unknown or a base URL is missing
    """
    config = config or {}

    raw_type = provider_type or _setting(config, "provider_type", "ORY_PROVIDER_TYPE", OryProviderType.NETWORK.value)
    try:
        kind = OryProviderType(str(raw_type).lower())
    except ValueError:
        raise ConfigurationError(f"Invalid provider type: {raw_type!r}. Expected 'network' or 'hydra'") from None

    if kind is OryProviderType.HYDRA:
        admin_url = _setting(config, "hydra_admin_url", "HYDRA_ADMIN_URL")
        public_url = _setting(config, "hydra_public_url", "HYDRA_PUBLIC_URL")
        if not admin_url:
            raise ConfigurationError(
                "Hydra admin URL is required. Set 'hydra_admin_url' in config file or HYDRA_ADMIN_URL environment variable"
            )
        if not public_url:
            raise ConfigurationError(
                "Hydra public URL is required. Set 'hydra_public_url' in config file or HYDRA_PUBLIC_URL environment variable"
            )
        return OryOptions(
            endpoints=build_endpoints(config, public_url),
            provider_type=kind,
            hydra_admin_url=admin_url.rstrip('/'),
            hydra_api_key=load_api_key(config, "hydra_api_key", "HYDRA_API_KEY"),
        )

    project_url = _setting(config, "project_url", "ORY_PROJECT_URL")
    if not project_url:
        raise ConfigurationError(
            "Ory project URL is required. Set 'project_url' in config file or ORY_PROJECT_URL environment variable"
        )
    return OryOptions(
        endpoints=build_endpoints(config, project_url),
        provider_type=kind,
        network_project_url=project_url.rstrip('/'),
        network_project_api_key=load_api_key(config, "project_api_key", "ORY_PROJECT_API_KEY"),
    )


def create_ory_provider(config_path: Optional[str] = None, timeout: Optional[float] = None) -> OryProvider:
    """
    Create and configure an OryProvider from file and environment.

    Args:
        config_path: Optional path to an Ory config file
        timeout: Optional HTTP timeout for backend calls

    Returns:
        Configured OryProvider instance
    """
    config = load_ory_config_from_file(config_path) or {}
    options = build_provider_options(config)

    logger.info("Configuring Ory OAuth provider:")
    for key, value in get_provider_config_summary(options).items():
        logger.info(f"  {key}: {value}")

    return OryProvider(options, timeout=timeout)


def _mask(secret: Optional[str]) -> str:
    if not secret:
        return "<unset>"
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}...{secret[-2:]}"


def get_provider_config_summary(options: OryOptions) -> Dict[str, Any]:
    """
    Get a summary of provider configuration for logging/debugging.

    API keys are masked.
    """
    kind = OryProviderType(options.provider_type)
    summary = {
        "provider_type": kind.value,
        "authorization_endpoint": options.endpoints.authorization_url,
        "token_endpoint": options.endpoints.token_url,
        "revocation_endpoint": options.endpoints.revocation_url,
        "registration_endpoint": options.endpoints.registration_url,
        "pkce_method": "S256",
    }
    if kind is OryProviderType.HYDRA:
        summary["admin_url"] = options.hydra_admin_url
        summary["api_key"] = _mask(options.hydra_api_key)
    else:
        summary["admin_url"] = options.network_project_url
        summary["api_key"] = _mask(options.network_project_api_key)
    return summary


def load_server_settings(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Settings used by the example server and the access-control tool.

    Access control is enabled only when jwks_url is set.
    """
    config = config or {}
    return {
        "project_url": _setting(config, "project_url", "ORY_PROJECT_URL"),
        "project_api_key": load_api_key(config, "project_api_key", "ORY_PROJECT_API_KEY"),
        "mcp_base_url": _setting(config, "mcp_base_url", "MCP_BASE_URL"),
        "service_documentation_url": _setting(config, "service_documentation_url", "SERVICE_DOCUMENTATION_URL"),
        "required_scopes": config.get("required_scopes") or ["ory.admin"],
        "jwks_url": _setting(config, "jwks_url", "ORY_JWKS_URL"),
        "jwt_issuer": _setting(config, "jwt_issuer", "ORY_JWT_ISSUER"),
        "jwt_audience": _setting(config, "jwt_audience", "ORY_JWT_AUDIENCE"),
        "claim_key": _setting(config, "claim_key", "ORY_CLAIM_KEY", "email"),
    }
