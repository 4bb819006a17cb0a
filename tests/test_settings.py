import pytest

from errors import ConfigurationError
from settings import DEFAULT_BASE_URL, HarnessSettings, Role, resolve_credential


class TestResolveCredential:
    def test_reads_role_prefixed_variables(self) -> None:
        env = {"CRM_L1_USER": "l1@example.test", "CRM_L1_PASS": "pw"}
        cred = resolve_credential(Role.L1, env)
        assert cred.role is Role.L1
        assert cred.username == "l1@example.test"
        assert cred.password == "pw"
        assert cred.totp_secret is None

    def test_default_role_uses_crm_prefix(self) -> None:
        cred = resolve_credential(Role.DEFAULT, {"CRM_USER": "u", "CRM_PASS": "p"})
        assert cred.username == "u"

    def test_optional_totp_secret(self) -> None:
        env = {"CRM_ADMIN_USER": "a", "CRM_ADMIN_PASS": "p", "CRM_ADMIN_TOTP": "JBSWY3DPEHPK3PXP"}
        assert resolve_credential(Role.ADMIN, env).totp_secret == "JBSWY3DPEHPK3PXP"

    @pytest.mark.parametrize("env", [
        {},
        {"CRM_L2_USER": "only-user"},
        {"CRM_L2_PASS": "only-pass"},
        {"CRM_L2_USER": "", "CRM_L2_PASS": "p"},
    ])
    def test_missing_variable_is_configuration_error(self, env) -> None:
        with pytest.raises(ConfigurationError, match="CRM_L2"):
            resolve_credential(Role.L2, env)

    def test_repr_never_shows_password(self) -> None:
        cred = resolve_credential(Role.DEFAULT, {"CRM_USER": "u", "CRM_PASS": "hunter2", "CRM_TOTP": "SEED"})
        assert "hunter2" not in repr(cred)
        assert "SEED" not in repr(cred)


class TestHarnessSettings:
    def test_defaults_outside_ci(self) -> None:
        settings = HarnessSettings.from_env({})
        assert settings.base_url == DEFAULT_BASE_URL
        assert settings.ci is False
        assert settings.retries == 0
        assert settings.action_timeout_ms == 15000
        assert settings.navigation_timeout_ms == 30000
        assert settings.test_timeout_s == 60

    def test_ci_enables_one_retry(self) -> None:
        settings = HarnessSettings.from_env({"CI": "true"})
        assert settings.ci is True
        assert settings.retries == 1

    def test_ci_false_string_is_not_ci(self) -> None:
        assert HarnessSettings.from_env({"CI": "false"}).ci is False

    def test_base_url_override_strips_trailing_slash(self) -> None:
        settings = HarnessSettings.from_env({"BASE_URL": "https://staging.example.test/"})
        assert settings.base_url == "https://staging.example.test"
        assert settings.base_host == "staging.example.test"
        assert settings.url("/login") == "https://staging.example.test/login"
        assert settings.url("crm/leads") == "https://staging.example.test/crm/leads"

    def test_explicit_overrides_win(self) -> None:
        settings = HarnessSettings.from_env({"CI": "1"}, retries=3)
        assert settings.retries == 3

    def test_none_override_keeps_env_value(self) -> None:
        settings = HarnessSettings.from_env({"E2E_RETRIES": "2"}, retries=None)
        assert settings.retries == 2

    def test_rejects_relative_base_url(self) -> None:
        with pytest.raises(ConfigurationError, match="BASE_URL"):
            HarnessSettings.from_env({"BASE_URL": "crm.example.test"})

    def test_rejects_non_integer_retries(self) -> None:
        with pytest.raises(ConfigurationError, match="E2E_RETRIES"):
            HarnessSettings.from_env({"E2E_RETRIES": "many"})
