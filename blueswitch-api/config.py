import os
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError


class Settings:
    def __init__(self) -> None:
        self.ssm_prefix = os.getenv("BLUESWITCH_SSM_PREFIX", "")
        self.mutations_disabled = self._as_bool(
            self._get("mutations_disabled", "BLUESWITCH_MUTATIONS_DISABLED", "0", str)
        )
        self.db_path = os.getenv("BLUESWITCH_DB_PATH", "./data/blueswitch.db")
        self.controller_id = os.getenv("BLUESWITCH_CONTROLLER_ID", "")

        environments = self._get("environments", "BLUESWITCH_ENVIRONMENTS", "staging,production", str)
        self.environments = [e.strip() for e in environments.split(",") if e.strip()]
        self.default_environment = self._get(
            "default_environment",
            "BLUESWITCH_DEFAULT_ENVIRONMENT",
            self.environments[0] if self.environments else "production",
            str,
        )

        self.webhook_secret = self._resolve_secret(
            self._get("webhook/secret", "BLUESWITCH_WEBHOOK_SECRET", "", str)
        )
        self.webhook_dedup_window_seconds = self._get(
            "webhook/dedup_window_seconds", "BLUESWITCH_WEBHOOK_DEDUP_WINDOW_SECONDS", 600, int
        )

        self.build_timeout_seconds = self._get("build_timeout_seconds", "BLUESWITCH_BUILD_TIMEOUT_SECONDS", 900.0, float)
        self.switch_timeout_seconds = self._get("switch_timeout_seconds", "BLUESWITCH_SWITCH_TIMEOUT_SECONDS", 60.0, float)
        self.purge_timeout_seconds = self._get("purge_timeout_seconds", "BLUESWITCH_PURGE_TIMEOUT_SECONDS", 30.0, float)
        purge_paths = self._get("purge_paths", "BLUESWITCH_PURGE_PATHS", "/*", str)
        self.purge_paths = [p.strip() for p in purge_paths.split(",") if p.strip()]

        self.health_max_attempts = self._get("health/max_attempts", "BLUESWITCH_HEALTH_MAX_ATTEMPTS", 5, int)
        self.health_required_passes = self._get("health/required_passes", "BLUESWITCH_HEALTH_REQUIRED_PASSES", 3, int)
        self.health_interval_seconds = self._get(
            "health/interval_seconds", "BLUESWITCH_HEALTH_INTERVAL_SECONDS", 10.0, float
        )
        self.health_backoff_base_seconds = self._get(
            "health/backoff_base_seconds", "BLUESWITCH_HEALTH_BACKOFF_BASE_SECONDS", 2.0, float
        )
        self.health_backoff_max_seconds = self._get(
            "health/backoff_max_seconds", "BLUESWITCH_HEALTH_BACKOFF_MAX_SECONDS", 60.0, float
        )
        self.health_probe_timeout_seconds = self._get(
            "health/probe_timeout_seconds", "BLUESWITCH_HEALTH_PROBE_TIMEOUT_SECONDS", 5.0, float
        )
        self.health_max_latency_ms = self._get("health/max_latency_ms", "BLUESWITCH_HEALTH_MAX_LATENCY_MS", 2000.0, float)
        self.slot_url_template = self._get(
            "slot_url_template",
            "BLUESWITCH_SLOT_URL_TEMPLATE",
            "http://{slot}.{environment}.internal/healthz",
            str,
        )
        self.auto_promote = self._as_bool(self._get("auto_promote", "BLUESWITCH_AUTO_PROMOTE", "1", str))

        self.cooldown_seconds = self._get("rollback/cooldown_seconds", "BLUESWITCH_COOLDOWN_SECONDS", 300.0, float)
        self.monitor_interval_seconds = self._get(
            "rollback/monitor_interval_seconds", "BLUESWITCH_MONITOR_INTERVAL_SECONDS", 30.0, float
        )
        self.error_rate_threshold = self._get(
            "rollback/error_rate_threshold", "BLUESWITCH_ERROR_RATE_THRESHOLD", 0.05, float
        )
        self.monitor_failure_threshold = self._get(
            "rollback/monitor_failure_threshold", "BLUESWITCH_MONITOR_FAILURE_THRESHOLD", 3, int
        )

        self.lease_ttl_seconds = self._get("lease_ttl_seconds", "BLUESWITCH_LEASE_TTL_SECONDS", 300.0, float)
        self.lock_wait_seconds = self._get("lock_wait_seconds", "BLUESWITCH_LOCK_WAIT_SECONDS", 10.0, float)

        self.engine_url = self._get("engine/url", "BLUESWITCH_ENGINE_URL", "", str)
        self.engine_token = self._resolve_secret(self._get("engine/token", "BLUESWITCH_ENGINE_TOKEN", "", str))
        artifact_schemes = self._get("artifact_ref_schemes", "BLUESWITCH_ARTIFACT_REF_SCHEMES", "s3,https", str)
        self.artifact_ref_schemes = [s.strip().lower() for s in artifact_schemes.split(",") if s.strip()]

        self.idempotency_ttl_seconds = self._get(
            "idempotency_ttl_seconds", "BLUESWITCH_IDEMPOTENCY_TTL_SECONDS", 24 * 60 * 60, int
        )
        self.oidc_issuer = self._get("oidc/issuer", "BLUESWITCH_OIDC_ISSUER", "", str)
        self.oidc_audience = self._get("oidc/audience", "BLUESWITCH_OIDC_AUDIENCE", "", str)
        self.oidc_jwks_url = self._get("oidc/jwks_url", "BLUESWITCH_OIDC_JWKS_URL", "", str)
        self.oidc_roles_claim = self._get(
            "oidc/roles_claim",
            "BLUESWITCH_OIDC_ROLES_CLAIM",
            "https://blueswitch.example/claims/roles",
            str,
        )

    def slot_url(self, environment: str, slot: str) -> str:
        return self.slot_url_template.format(environment=environment, slot=slot)

    def _as_bool(self, value: object) -> bool:
        text = str(value or "").strip().lower()
        return text in {"1", "true", "yes", "on"}

    def _get(self, ssm_key: str, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        if self.ssm_prefix:
            value = self._read_ssm(f"{self.ssm_prefix}/{ssm_key}")
            if value is not None:
                try:
                    return parser(value)
                except ValueError:
                    return default
        return default

    def _read_ssm(self, name: str) -> Optional[str]:
        try:
            client = boto3.client("ssm")
            response = client.get_parameter(Name=name, WithDecryption=True)
            return response.get("Parameter", {}).get("Value")
        except (BotoCoreError, ClientError):
            return None

    def _resolve_secret(self, value: Optional[str]) -> Optional[str]:
        if not isinstance(value, str):
            return value
        if not value.startswith("arn:aws:secretsmanager:"):
            return value
        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=value)
            return response.get("SecretString", value)
        except (BotoCoreError, ClientError):
            return value


SETTINGS = Settings()
