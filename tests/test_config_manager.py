"""Unit tests for ecr_cleaner/config_manager.py"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import yaml

from ecr_cleaner.config_manager import (
    ClusterPolicy,
    ConfigManager,
    RepositoryPolicy,
    cluster_arn_to_name,
    find_policy,
    parse_duration,
    wildcard_match,
)
from ecr_cleaner.errors import ConfigurationError

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def write_config(tmp_path):
    """Write a YAML config into a temp dir and return its path"""
    def _write(config, name="config.yaml"):
        path = tmp_path / name
        path.write_text(yaml.dump(config))
        return str(path)
    return _write


@pytest.fixture(autouse=True)
def clean_env():
    """Keep the caller's environment from leaking into config lookups"""
    keys = ["ECR_CLEANER_REGION", "ECR_CLEANER_PROFILE", "ECR_CLEANER_MAX_WORKERS", "AWS_REGION", "AWS_DEFAULT_REGION"]
    with patch.dict(os.environ, {}, clear=False):
        for key in keys:
            os.environ.pop(key, None)
        yield


class TestParseDuration:
    """Tests for parse_duration"""

    @pytest.mark.parametrize("value,expected", [
        ("30d", timedelta(days=30)),
        ("12h", timedelta(hours=12)),
        ("1d12h", timedelta(days=1, hours=12)),
        ("2w", timedelta(weeks=2)),
        ("1y", timedelta(days=365)),
        ("6mo", timedelta(days=180)),
        ("90m", timedelta(minutes=90)),
        ("45s", timedelta(seconds=45)),
    ])
    def test_valid_durations(self, value, expected):
        """Test the supported units"""
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "30", "30.5", "30x", "d30", "-1d", "0d", 30, 30.5, 0, True])
    def test_invalid_durations(self, value):
        """Test that malformed or non-positive durations are rejected"""
        with pytest.raises(ValueError):
            parse_duration(value)


class TestMatching:
    """Tests for name matching helpers"""

    def test_wildcard_match(self):
        """Test glob matching with * and ?"""
        assert wildcard_match("prod*", "prod-api")
        assert wildcard_match("v?", "v1")
        assert not wildcard_match("v?", "v10")
        assert not wildcard_match("", "anything")

    def test_cluster_arn_to_name(self):
        """Test cluster ARNs are reduced to names"""
        assert cluster_arn_to_name("arn:aws:ecs:us-west-2:123456789012:cluster/prod") == "prod"
        assert cluster_arn_to_name("prod") == "prod"

    def test_cluster_policy_matches_arn(self):
        """Test cluster policies match against the cluster name of an ARN"""
        policy = ClusterPolicy(name_pattern="prod*")
        assert policy.matches("arn:aws:ecs:us-west-2:123456789012:cluster/prod-web")
        assert not policy.matches("arn:aws:ecs:us-west-2:123456789012:cluster/staging")

    def test_repository_policy_tag_and_expiry(self):
        """Test tag pattern matching and expiry on a resolved policy"""
        policy = RepositoryPolicy(name="app", expires="30d", expire_before=NOW - timedelta(days=30),
                                  keep_tag_patterns=("latest", "release-*"))
        assert policy.matches("app")
        assert not policy.matches("app2")
        assert policy.matches_tag("release-1.0")
        assert not policy.matches_tag("dev")
        assert policy.is_expired(NOW - timedelta(days=31))
        assert not policy.is_expired(NOW - timedelta(days=30))


class TestConfigManagerLoading:
    """Tests for loading and merging configuration"""

    def test_missing_config_file_is_an_error(self):
        """Test that a missing config file raises ConfigurationError"""
        with pytest.raises(ConfigurationError) as exc:
            ConfigManager(config_file="/nonexistent/config.yaml")
        assert "not found" in exc.value.message

    def test_invalid_yaml_is_an_error(self, tmp_path):
        """Test that unparseable YAML raises ConfigurationError"""
        path = tmp_path / "config.yaml"
        path.write_text("repositories: [unclosed\n")
        with pytest.raises(ConfigurationError):
            ConfigManager(config_file=str(path))

    def test_defaults_are_merged(self, write_config):
        """Test unspecified settings fall back to defaults"""
        cm = ConfigManager(config_file=write_config({"aws": {"region": "eu-west-1"}}), now=NOW)
        assert cm.get_region() == "eu-west-1"
        assert cm.get_profile() is None
        assert cm.get_max_workers() == 4
        assert cm.get_output_format() == "table"
        assert cm.get_output_file() == "-"
        assert cm.get_cluster_policies() == ()
        assert cm.get_repository_policies() == ()

    def test_environment_overrides(self, write_config):
        """Test environment variables take precedence over the file"""
        path = write_config({"aws": {"region": "eu-west-1", "profile": "dev"}, "scan": {"max_workers": 2}})
        with patch.dict(os.environ, {"ECR_CLEANER_REGION": "us-east-1", "ECR_CLEANER_PROFILE": "prod",
                                     "ECR_CLEANER_MAX_WORKERS": "8"}):
            cm = ConfigManager(config_file=path, now=NOW)
            assert cm.get_region() == "us-east-1"
            assert cm.get_profile() == "prod"
            assert cm.get_max_workers() == 8

    def test_aws_region_env_used_when_config_has_none(self, write_config):
        """Test the standard AWS region variable is the fallback"""
        with patch.dict(os.environ, {"AWS_REGION": "ap-northeast-1"}):
            cm = ConfigManager(config_file=write_config({}), now=NOW)
            assert cm.get_region() == "ap-northeast-1"


class TestConfigManagerValidation:
    """Tests for policy validation"""

    def test_repository_policy_is_resolved(self, write_config):
        """Test expires is resolved against the reference instant"""
        path = write_config({"repositories": [
            {"name_pattern": "app/*", "expires": "30d", "keep_count": 3, "keep_tag_patterns": ["release-*"]},
        ]})
        cm = ConfigManager(config_file=path, now=NOW)
        (policy,) = cm.get_repository_policies()
        assert policy.name_pattern == "app/*"
        assert policy.expire_before == NOW - timedelta(days=30)
        assert policy.keep_count == 3
        assert policy.keep_tag_patterns == ("release-*",)

    def test_repository_defaults(self, write_config, caplog):
        """Test keep_tag_patterns defaults to latest with a warning and keep_count to 0"""
        path = write_config({"repositories": [{"name": "app", "expires": "7d"}]})
        cm = ConfigManager(config_file=path, now=NOW)
        (policy,) = cm.get_repository_policies()
        assert policy.keep_tag_patterns == ("latest",)
        assert policy.keep_count == 0
        assert "keep_tag_patterns" in caplog.text

    def test_repository_expires_is_required(self, write_config):
        """Test a repository without expires is rejected"""
        path = write_config({"repositories": [{"name": "app"}]})
        with pytest.raises(ConfigurationError) as exc:
            ConfigManager(config_file=path, now=NOW)
        assert "expires is required" in exc.value.message

    @pytest.mark.parametrize("section,entry", [
        ("repositories", {"name": "a", "name_pattern": "a*", "expires": "1d"}),
        ("clusters", {"name": "a", "name_pattern": "a*"}),
        ("task_definitions", {"name": "a", "name_pattern": "a*"}),
        ("lambda_functions", {"name": "a", "name_pattern": "a*"}),
        ("eks_clusters", {"name": "a", "name_pattern": "a*"}),
    ])
    def test_name_and_pattern_are_exclusive(self, write_config, section, entry):
        """Test setting both name and name_pattern is rejected"""
        with pytest.raises(ConfigurationError) as exc:
            ConfigManager(config_file=write_config({section: [entry]}), now=NOW)
        assert "exclusive" in exc.value.message

    def test_name_or_pattern_required(self, write_config):
        """Test a policy with neither name nor name_pattern is rejected"""
        with pytest.raises(ConfigurationError) as exc:
            ConfigManager(config_file=write_config({"clusters": [{}]}), now=NOW)
        assert "name or name_pattern is required" in exc.value.message

    def test_keep_count_defaults_for_task_definitions_and_lambda(self, write_config, caplog):
        """Test task definition and Lambda keep_count default to 5 with a warning"""
        path = write_config({
            "task_definitions": [{"name": "web"}],
            "lambda_functions": [{"name_pattern": "fn-*", "keep_count": 2}],
        })
        cm = ConfigManager(config_file=path, now=NOW)
        assert cm.get_task_definition_policies()[0].keep_count == 5
        assert cm.get_lambda_policies()[0].keep_count == 2
        assert "keep_count for task_definitions web is not defined" in caplog.text

    def test_exclude_files_resolved_relative_to_config(self, write_config, tmp_path):
        """Test relative exclude files are resolved against the config directory"""
        (tmp_path / "keep.txt").write_text("")
        cm = ConfigManager(config_file=write_config({"exclude_files": ["keep.txt"]}), now=NOW)
        assert cm.get_exclude_files() == (str(tmp_path / "keep.txt"),)

    def test_missing_exclude_file_is_an_error(self, write_config):
        """Test exclude files must exist"""
        with pytest.raises(ConfigurationError) as exc:
            ConfigManager(config_file=write_config({"exclude_files": ["missing.txt"]}), now=NOW)
        assert "missing.txt" in exc.value.message

    def test_external_commands(self, write_config, tmp_path):
        """Test external commands are parsed with timeout and resolved dir"""
        path = write_config({"external_commands": [
            {"command": ["./list.sh", "-a"], "env": {"STAGE": "prod"}, "dir": "bin", "timeout": "30s"},
        ]})
        cm = ConfigManager(config_file=path, now=NOW)
        (cmd,) = cm.get_external_commands()
        assert cmd.command == ("./list.sh", "-a")
        assert cmd.env == {"STAGE": "prod"}
        assert cmd.dir == str(tmp_path / "bin")
        assert cmd.timeout == 30
        assert cmd.label == "external_command: ./list.sh -a"

    @pytest.mark.parametrize("entry", [
        {"command": []},
        {"command": "ls"},
        {"command": ["ls"], "timeout": "soon"},
        {"command": ["ls"], "env": ["A=1"]},
    ])
    def test_invalid_external_commands(self, write_config, entry):
        """Test malformed external commands are rejected"""
        with pytest.raises(ConfigurationError):
            ConfigManager(config_file=write_config({"external_commands": [entry]}), now=NOW)

    def test_invalid_output_format(self, write_config):
        """Test unknown output formats are rejected"""
        with pytest.raises(ConfigurationError):
            ConfigManager(config_file=write_config({"output": {"format": "xml"}}), now=NOW)

    def test_invalid_max_workers(self, write_config):
        """Test non-positive worker counts are rejected"""
        with pytest.raises(ConfigurationError):
            ConfigManager(config_file=write_config({"scan": {"max_workers": 0}}), now=NOW)

    def test_all_errors_are_reported_together(self, write_config):
        """Test validation collects every error before raising"""
        path = write_config({
            "clusters": [{}],
            "repositories": [{"name": "app"}],
        })
        with pytest.raises(ConfigurationError) as exc:
            ConfigManager(config_file=path, now=NOW)
        assert "clusters[0]" in exc.value.message
        assert "repository app" in exc.value.message

    def test_unitless_expires_is_rejected(self, write_config):
        """Test a bare number of days read from YAML is not mistaken for seconds"""
        path = write_config({"repositories": [{"name": "app", "expires": 30}]})
        with pytest.raises(ConfigurationError) as exc:
            ConfigManager(config_file=path, now=NOW)
        assert "repository app: expires" in exc.value.message
        assert "30d" in exc.value.message

    def test_find_repository_policy_first_match_wins(self, write_config):
        """Test the first matching repository policy is used"""
        path = write_config({"repositories": [
            {"name_pattern": "prod/*", "expires": "90d"},
            {"name_pattern": "*", "expires": "30d"},
        ]})
        cm = ConfigManager(config_file=path, now=NOW)
        assert cm.find_repository_policy("prod/api").expires == "90d"
        assert cm.find_repository_policy("dev/api").expires == "30d"
        assert cm.find_repository_policy("other") is None

    def test_find_policy(self):
        """Test the module-level lookup returns the first match or None"""
        policies = [ClusterPolicy(name="prod"), ClusterPolicy(name_pattern="*")]
        assert find_policy(policies, "arn:aws:ecs:us-west-2:123456789012:cluster/prod") is policies[0]
        assert find_policy(policies, "dev") is policies[1]
        assert find_policy(policies[:1], "dev") is None

    def test_policies_are_immutable(self, write_config):
        """Test validated policies cannot be modified"""
        path = write_config({"repositories": [{"name": "app", "expires": "1d"}]})
        policy = ConfigManager(config_file=path, now=NOW).get_repository_policies()[0]
        with pytest.raises(Exception):
            policy.keep_count = 10
