"""Unit tests for ecr_cleaner/scanners/ecs.py"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from ecr_cleaner.config_manager import ClusterPolicy, TaskDefinitionPolicy
from ecr_cleaner.errors import ProviderError
from ecr_cleaner.scanners.ecs import ECSScanner, parse_task_definition_arn

ACCOUNT = "123456789012"
REGION = "us-west-2"
REGISTRY = f"{ACCOUNT}.dkr.ecr.{REGION}.amazonaws.com"
CLUSTER_ARN = f"arn:aws:ecs:{REGION}:{ACCOUNT}:cluster/prod"
DIGEST = "sha256:" + "d" * 64


def td_arn(td):
    return f"arn:aws:ecs:{REGION}:{ACCOUNT}:task-definition/{td}"


def task_definition(*images):
    return {"taskDefinition": {"containerDefinitions": [{"name": f"c{i}", "image": img} for i, img in enumerate(images)]}}


class TestParseTaskDefinitionArn:
    """Tests for parse_task_definition_arn"""

    def test_arn(self):
        """Test the family:revision part is extracted"""
        assert parse_task_definition_arn(td_arn("web:12")) == "web:12"

    def test_family_revision(self):
        """Test a bare family:revision is accepted"""
        assert parse_task_definition_arn("web:12") == "web:12"

    @pytest.mark.parametrize("value", ["web", td_arn("web"), td_arn("web:latest")])
    def test_invalid(self, value):
        """Test identifiers without a numeric revision are rejected"""
        with pytest.raises(ProviderError):
            parse_task_definition_arn(value)


class TestECSScanner:
    """Tests for ECSScanner"""

    @pytest.fixture
    def ecs(self, paginated):
        client = MagicMock()

        def list_tasks(kwargs):
            if kwargs["desiredStatus"] == "RUNNING":
                return [{"taskArns": [f"arn:aws:ecs:{REGION}:{ACCOUNT}:task/prod/t1"]}]
            return [{"taskArns": []}]

        def list_task_definitions(kwargs):
            assert kwargs["familyPrefix"] == "worker"
            assert kwargs["sort"] == "DESC"
            return [{"taskDefinitionArns": [td_arn("worker-old:9"), td_arn("worker:3"), td_arn("worker:2"),
                                            td_arn("worker:1")]}]

        paginated(client, {
            "list_clusters": [{"clusterArns": [CLUSTER_ARN, f"arn:aws:ecs:{REGION}:{ACCOUNT}:cluster/dev"]}],
            "list_tasks": list_tasks,
            "list_services": [{"serviceArns": ["svc-a"]}],
            "list_task_definition_families": [{"families": ["worker", "worker-old"]}],
            "list_task_definitions": list_task_definitions,
        })
        client.describe_tasks.return_value = {"tasks": [{
            "taskArn": f"arn:aws:ecs:{REGION}:{ACCOUNT}:task/prod/t1",
            "taskDefinitionArn": td_arn("web:7"),
            "containers": [
                {"name": "app", "image": f"{REGISTRY}/web:v7", "imageDigest": DIGEST},
                {"name": "sidecar", "image": "public.ecr.aws/nginx/nginx:1", "imageDigest": DIGEST},
            ],
        }]}
        client.describe_services.return_value = {"services": [{
            "serviceName": "svc-a",
            "deployments": [
                {"status": "PRIMARY", "taskDefinition": td_arn("web:8")},
                {"status": "ACTIVE", "taskDefinition": td_arn("web:7")},
            ],
        }]}
        definitions = {
            "web:7": task_definition(f"{REGISTRY}/web:v7", "busybox:latest"),
            "web:8": task_definition(f"{REGISTRY}/web:v8"),
            "worker:3": task_definition(f"{REGISTRY}/worker:v3"),
            "worker:2": task_definition(f"{REGISTRY}/worker:v2"),
            "worker:1": task_definition(f"{REGISTRY}/worker:v1"),
        }
        client.describe_task_definition.side_effect = lambda taskDefinition: definitions[taskDefinition]
        return client

    def test_scan(self, ecs):
        """Test tasks, deployments and recent family revisions are all collected"""
        scanner = ECSScanner(
            ecs,
            clusters=[ClusterPolicy(name="prod")],
            task_definitions=[TaskDefinitionPolicy(name="worker", keep_count=2)],
            max_workers=2,
        )
        table = scanner.scan()

        assert table.references() == sorted([
            f"{REGISTRY}/web@{DIGEST}",
            f"{REGISTRY}/web:v7",
            f"{REGISTRY}/web:v8",
            f"{REGISTRY}/worker:v2",
            f"{REGISTRY}/worker:v3",
        ])
        assert table.consumers(f"{REGISTRY}/web@{DIGEST}") == ["web:7"]
        assert table.consumers(f"{REGISTRY}/web:v8") == ["web:8"]

    def test_only_matching_clusters_are_scanned(self, ecs):
        """Test clusters outside the policies are not listed"""
        ECSScanner(ecs, clusters=[ClusterPolicy(name="prod")]).scan()
        for call in ecs.describe_tasks.call_args_list:
            assert call.kwargs["cluster"] == CLUSTER_ARN

    def test_recent_task_definitions_filters_prefix_matches(self, ecs):
        """Test families sharing a prefix are not counted"""
        scanner = ECSScanner(ecs, task_definitions=[TaskDefinitionPolicy(name="worker", keep_count=2)])
        assert scanner.recent_task_definitions() == ["worker:3", "worker:2"]

    def test_missing_sections_are_warned(self, ecs, caplog):
        """Test an unconfigured scanner scans nothing and warns"""
        table = ECSScanner(ecs).scan()
        assert len(table) == 0
        assert "clusters are not defined" in caplog.text
        assert "task_definitions are not defined" in caplog.text
        ecs.describe_task_definition.assert_not_called()

    def test_describe_failure_is_a_provider_error(self, ecs):
        """Test SDK errors surface as ProviderError"""
        ecs.describe_task_definition.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "DescribeTaskDefinition"
        )
        scanner = ECSScanner(ecs, task_definitions=[TaskDefinitionPolicy(name="worker", keep_count=1)])
        with pytest.raises(ProviderError):
            scanner.scan()
