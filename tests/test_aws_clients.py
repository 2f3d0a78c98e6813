"""Unit tests for ecr_cleaner/aws_clients.py"""

import base64
import os
from urllib.parse import parse_qs, urlparse

import boto3
import pytest
from kubernetes import client as k8s_client

from ecr_cleaner.aws_clients import EKS_TOKEN_PREFIX, AWSClientProvider
from ecr_cleaner.errors import ConfigurationError, ProviderError

CA_PEM = b"-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"


@pytest.fixture
def session():
    return boto3.Session(aws_access_key_id="AKIDEXAMPLE", aws_secret_access_key="secret", region_name="us-west-2")


@pytest.fixture
def provider(session):
    provider = AWSClientProvider(region="us-west-2", session=session)
    yield provider
    provider.close()


class TestAWSClientProvider:
    """Tests for client construction"""

    def test_region_is_required(self, monkeypatch):
        monkeypatch.delenv("AWS_REGION", raising=False)
        monkeypatch.delenv("AWS_DEFAULT_REGION", raising=False)
        session = boto3.Session(aws_access_key_id="AKIDEXAMPLE", aws_secret_access_key="secret")
        if session.region_name:
            pytest.skip("a default region is configured in this environment")
        with pytest.raises(ConfigurationError):
            AWSClientProvider(session=session)

    def test_clients_are_cached_without_retries(self, provider):
        ecr = provider.client("ecr")
        assert provider.client("ecr") is ecr
        assert ecr.meta.region_name == "us-west-2"
        assert ecr.meta.config.retries["total_max_attempts"] == 1

    def test_eks_token(self, provider):
        """Test the token is a presigned GetCallerIdentity URL bound to the cluster"""
        token = provider.eks_token("main")
        assert token.startswith(EKS_TOKEN_PREFIX)

        encoded = token[len(EKS_TOKEN_PREFIX):]
        url = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)).decode()
        query = parse_qs(urlparse(url).query)
        assert urlparse(url).netloc == "sts.us-west-2.amazonaws.com"
        assert query["Action"] == ["GetCallerIdentity"]
        assert query["X-Amz-Expires"] == ["60"]
        assert "x-k8s-aws-id" in query["X-Amz-SignedHeaders"][0]

    def test_kubernetes_clients(self, provider, mocker):
        """Test the cluster endpoint, CA bundle and bearer token are wired into the API client"""
        eks = mocker.MagicMock()
        eks.describe_cluster.return_value = {"cluster": {
            "endpoint": "https://ABC.gr7.us-west-2.eks.amazonaws.com",
            "certificateAuthority": {"data": base64.b64encode(CA_PEM).decode()},
        }}
        mocker.patch.object(provider, "client", return_value=eks)
        mocker.patch.object(provider, "eks_token", return_value="k8s-aws-v1.token")

        clients = provider.kubernetes_clients("main")

        assert isinstance(clients.core, k8s_client.CoreV1Api)
        assert isinstance(clients.apps, k8s_client.AppsV1Api)
        assert isinstance(clients.batch, k8s_client.BatchV1Api)
        configuration = clients.core.api_client.configuration
        assert configuration.host == "https://ABC.gr7.us-west-2.eks.amazonaws.com"
        assert configuration.api_key == {"authorization": "k8s-aws-v1.token"}
        with open(configuration.ssl_ca_cert, "rb") as f:
            assert f.read() == CA_PEM

        provider.close()
        assert not os.path.exists(configuration.ssl_ca_cert)

    def test_cluster_without_endpoint(self, provider, mocker):
        eks = mocker.MagicMock()
        eks.describe_cluster.return_value = {"cluster": {"status": "CREATING"}}
        mocker.patch.object(provider, "client", return_value=eks)
        with pytest.raises(ProviderError):
            provider.kubernetes_clients("main")
