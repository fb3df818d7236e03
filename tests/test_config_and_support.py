"""config_loader, kms_utils, after_commit and the app-config seed script."""
from decimal import Decimal
from unittest import mock

import boto3
import pytest
from botocore.stub import Stubber

import config_loader
import kms_utils
import seed_app_config
from after_commit import AfterCommit, fire_and_log
from config_loader import ConfigError


@pytest.fixture
def kms(monkeypatch):
    client = boto3.client("kms", region_name="us-west-2")
    monkeypatch.setattr(kms_utils, "_kms_client", client)
    with Stubber(client) as stubber:
        yield stubber


class TestConfigLoader:
    def test_env_rows_override_global(self, monkeypatch):
        table = mock.Mock()
        table.scan.side_effect = [
            {"Items": [{"config_key": "shipping_provider", "value": "shippo"},
                       {"config_key": "poll", "value": Decimal("3")}]},
            {"Items": [{"config_key": "shipping_provider", "value": "shipengine"}]},
        ]
        monkeypatch.setattr(config_loader, "_config_table", lambda: table)
        cfg = config_loader.load_config(force=True)
        assert cfg == {"shipping_provider": "shipengine", "poll": 3, "environment": "test"}

    def test_required_value(self, app_config):
        with pytest.raises(ConfigError):
            config_loader.get_value("shippo_api_key", required=True)
        assert config_loader.get_value("shippo_api_key", "fallback") == "fallback"

    def test_empty_string_counts_as_missing(self, app_config):
        app_config["shippo_api_key"] = ""
        assert config_loader.get_value("shippo_api_key") is None

    def test_get_bool(self, app_config):
        app_config["label_idempotency_enforced"] = "True"
        assert config_loader.get_bool("label_idempotency_enforced") is True
        assert config_loader.get_bool("missing_flag") is False

    def test_secret_env_var_wins(self, app_config, monkeypatch):
        app_config["shippo_webhook_secret"] = "from-table"
        monkeypatch.setenv("SHIPPO_WEBHOOK_SECRET", " from-env ")
        assert config_loader.get_secret("shippo_webhook_secret", "SHIPPO_WEBHOOK_SECRET") == "from-env"

    def test_wrapped_secret_is_decrypted(self, app_config, kms):
        app_config["shippo_api_key"] = "ENCRYPTED(YmxvYg==)"
        kms.add_response("decrypt", {"Plaintext": b"shippo_live_123"},
                         {"CiphertextBlob": b"blob", "EncryptionContext": kms_utils.ENCRYPTION_CONTEXT})
        assert config_loader.get_secret("shippo_api_key") == "shippo_live_123"

    def test_missing_table_env(self, monkeypatch):
        monkeypatch.delenv("SHIPMENTS_TABLE")
        with pytest.raises(ConfigError):
            config_loader.require_env("SHIPMENTS_TABLE")


class TestKms:
    def test_encrypt_wraps_ciphertext(self, kms):
        kms.add_response("encrypt", {"CiphertextBlob": b"\x01\x02"},
                         {"KeyId": "arn:key", "Plaintext": b"hi", "EncryptionContext": kms_utils.ENCRYPTION_CONTEXT})
        assert kms_utils.kms_encrypt("hi", "arn:key") == "ENCRYPTED(AQI=)"

    def test_encrypt_needs_key(self, monkeypatch):
        monkeypatch.delenv("FULFILLMENT_KMS_KEY_ARN", raising=False)
        with pytest.raises(ValueError):
            kms_utils.kms_encrypt("hi")

    def test_plaintext_passthrough(self):
        assert kms_utils.kms_decrypt_wrapped("shippo_test_abc") == "shippo_test_abc"
        assert kms_utils.kms_decrypt_wrapped("") == ""

    def test_decrypt_failure_is_value_error(self, kms):
        kms.add_client_error("decrypt", service_error_code="InvalidCiphertextException")
        with pytest.raises(ValueError):
            kms_utils.kms_decrypt_wrapped("ENCRYPTED(YmxvYg==)")

    def test_mask(self):
        assert kms_utils.mask_secret("shippo_live_abcd") == "************abcd"
        assert kms_utils.mask_secret("abc") == "***"
        assert kms_utils.mask_secret(None) == ""


class TestAfterCommit:
    def test_failure_does_not_stop_later_tasks(self):
        calls = []
        tasks = AfterCommit("[LABEL] order=o1")
        tasks.add("order status", calls.append, "status")
        tasks.add("email", mock.Mock(side_effect=RuntimeError("smtp down")))
        tasks.add("event", calls.append, "event")
        assert tasks.run() == {"order status": True, "email": False, "event": True}
        assert calls == ["status", "event"]

    def test_run_clears_tasks(self):
        tasks = AfterCommit().add("noop", lambda: None)
        tasks.run()
        assert tasks.run() == {}

    def test_fire_and_log_returns_value(self):
        assert fire_and_log("x", lambda a: a * 2, 21) == (True, 42)
        assert fire_and_log("x", mock.Mock(side_effect=KeyError("k"))) == (False, None)


class TestSeedScript:
    def test_parse_secrets(self):
        assert seed_app_config.parse_secret_args(["shippo_api_key=a=b"]) == [("shippo_api_key", "a=b")]

    @pytest.mark.parametrize("pair", ["no_equals", "=x", "unknown_key=1"])
    def test_bad_secret_args(self, pair):
        with pytest.raises(ValueError):
            seed_app_config.parse_secret_args([pair])

    def test_prod_items_only(self):
        rows = seed_app_config.default_items("prod")
        envs = {env for _k, env, _v, _d in rows}
        assert envs == {"global", "prod"}
        assert ("ses_region", "prod", "us-west-2", "SES region (prod)") in rows

    def test_unknown_environment(self):
        with pytest.raises(ValueError):
            seed_app_config.table_name_for_app_config("staging")

    def test_seed_encrypts_secrets(self, monkeypatch):
        table = mock.Mock()
        resource = mock.Mock()
        resource.Table.return_value = table
        monkeypatch.setattr(seed_app_config.boto3, "resource", mock.Mock(return_value=resource))
        monkeypatch.setattr(seed_app_config, "kms_encrypt", lambda v, arn: f"ENCRYPTED({v}@{arn})")

        errors = seed_app_config.seed_config("us-west-2", "dev", [("shippo_api_key", "k1")],
                                             encrypt=True, kms_key_arn="arn:key")
        assert errors == 0
        resource.Table.assert_called_once_with("app-config-dev")
        items = {c.kwargs["Item"]["config_key"]: c.kwargs["Item"] for c in table.put_item.call_args_list}
        assert items["shippo_api_key"]["value"] == "ENCRYPTED(k1@arn:key)"
        assert items["shippo_api_key"]["environment"] == "dev"
        assert items["shipping_provider"]["environment"] == "global"

    def test_seed_counts_errors(self, monkeypatch):
        table = mock.Mock()
        table.put_item.side_effect = RuntimeError("denied")
        resource = mock.Mock()
        resource.Table.return_value = table
        monkeypatch.setattr(seed_app_config.boto3, "resource", mock.Mock(return_value=resource))
        errors = seed_app_config.seed_config("us-west-2", "dev", [])
        assert errors == len(seed_app_config.default_items("dev"))
