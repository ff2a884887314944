"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass
from typing import Optional, Protocol, List


@dataclass
class APIConfig:
    """API configuration."""
    port: int
    host: str
    debug: bool
    cors_origins: List[str]


@dataclass
class AuthConfig:
    """Authentication configuration."""
    require_auth: bool
    api_keys: List[str]


@dataclass
class KubernetesConfig:
    """Settings for the kubectl binary used by rollouts."""
    kubectl_bin: str
    context: Optional[str]
    kubeconfig: Optional[str]

    @property
    def base_args(self) -> List[str]:
        """Global kubectl flags applied to every invocation."""
        args = []
        if self.kubeconfig:
            args.extend(["--kubeconfig", self.kubeconfig])
        if self.context:
            args.extend(["--context", self.context])
        return args


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_api_config(self) -> APIConfig:
        """Get API configuration."""
        ...

    def get_auth_config(self) -> AuthConfig:
        """Get authentication configuration."""
        ...

    def get_kubernetes_config(self) -> KubernetesConfig:
        """Get kubectl configuration."""
        ...


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def get_api_config(self) -> APIConfig:
        """Get API configuration from environment variables."""
        return APIConfig(
            port=int(os.getenv("API_PORT", "8080")),
            host=os.getenv("API_HOST", "0.0.0.0"),
            debug=os.getenv("API_DEBUG", "false").lower() == "true",
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(",")
        )

    def get_auth_config(self) -> AuthConfig:
        """Get authentication configuration from environment variables."""
        require_auth = os.getenv("REQUIRE_AUTH", "true").lower() == "true"

        # API keys are required whenever auth is on - no default for security
        api_keys_env = os.getenv("API_KEYS")
        if require_auth and not api_keys_env:
            raise ValueError(
                "API_KEYS environment variable is required when REQUIRE_AUTH=true. "
                "Format: service:key,service:key. Example: jenkins-bridge:your-generated-key"
            )

        api_keys = (api_keys_env or "").split(",")

        return AuthConfig(
            require_auth=require_auth,
            api_keys=[key.strip() for key in api_keys if key.strip()]
        )

    def get_kubernetes_config(self) -> KubernetesConfig:
        """Get kubectl configuration from environment variables."""
        return KubernetesConfig(
            kubectl_bin=os.getenv("KUBECTL_BIN", "kubectl"),
            context=os.getenv("KUBE_CONTEXT") or None,
            kubeconfig=os.getenv("KUBECONFIG") or None,
        )
