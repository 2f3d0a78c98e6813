"""
AWS session and client construction.

One boto3 session is shared by every scanner, the planner and the executor.
Clients are built with retries disabled: a failed call surfaces as a
ProviderError and aborts the run instead of being retried silently.
EKS clusters are reached with a short-lived bearer token minted from a
presigned STS GetCallerIdentity request, the same exchange
``aws eks get-token`` performs.
"""

import base64
import os
import tempfile
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.signers import RequestSigner
from kubernetes import client as k8s_client

from ecr_cleaner.errors import ConfigurationError, ProviderError, provider_errors
from ecr_cleaner.logging_utils import get_logger

EKS_TOKEN_PREFIX = "k8s-aws-v1."
EKS_TOKEN_EXPIRES_IN = 60
EKS_CLUSTER_ID_HEADER = "x-k8s-aws-id"

NO_RETRY_CONFIG = Config(retries={"total_max_attempts": 1, "mode": "standard"})


@dataclass
class KubernetesClients:
    """API groups used to enumerate workloads in one cluster"""
    core: Any
    apps: Any
    batch: Any


class AWSClientProvider:
    """Builds and caches boto3 clients for one account and region"""

    def __init__(self, region: Optional[str] = None, profile: Optional[str] = None,
                 session: Optional[boto3.Session] = None, logger=None):
        self.logger = logger or get_logger(self.__class__.__name__)
        self.session = session or boto3.Session(profile_name=profile, region_name=region)
        self.region = region or self.session.region_name
        if not self.region:
            raise ConfigurationError(
                "AWS region is not configured",
                suggestions=[
                    "Set aws.region in the configuration file",
                    "Or export AWS_REGION / AWS_DEFAULT_REGION",
                ],
            )
        self._clients: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._temp_files: List[str] = []

    def client(self, service: str):
        """Return a cached client for service (boto3 clients are thread safe)."""
        with self._lock:
            if service not in self._clients:
                self.logger.debug(f"Creating {service} client in {self.region}")
                self._clients[service] = self.session.client(
                    service, region_name=self.region, config=NO_RETRY_CONFIG
                )
            return self._clients[service]

    def eks_token(self, cluster_name: str) -> str:
        """Mint a bearer token accepted by the EKS API server for cluster_name."""
        sts = self.client("sts")
        credentials = self.session.get_credentials()
        if credentials is None:
            raise ProviderError(
                "No AWS credentials available to authenticate with EKS",
                suggestions=["Configure AWS credentials (aws configure) or set AWS_PROFILE"],
                details={"cluster": cluster_name},
            )
        signer = RequestSigner(
            sts.meta.service_model.service_id,
            self.region,
            "sts",
            "v4",
            credentials,
            self.session.events,
        )
        params = {
            "method": "GET",
            "url": f"https://sts.{self.region}.amazonaws.com/?Action=GetCallerIdentity&Version=2011-06-15",
            "body": {},
            "headers": {EKS_CLUSTER_ID_HEADER: cluster_name},
            "context": {},
        }
        with provider_errors(f"sts:GetCallerIdentity presign for {cluster_name}"):
            signed_url = signer.generate_presigned_url(
                params, region_name=self.region, expires_in=EKS_TOKEN_EXPIRES_IN, operation_name=""
            )
        encoded = base64.urlsafe_b64encode(signed_url.encode("utf-8")).decode("utf-8")
        return EKS_TOKEN_PREFIX + encoded.rstrip("=")

    def kubernetes_clients(self, cluster_name: str) -> KubernetesClients:
        """Build Kubernetes API clients for an EKS cluster."""
        eks = self.client("eks")
        with provider_errors(f"eks:DescribeCluster {cluster_name}"):
            cluster = eks.describe_cluster(name=cluster_name)["cluster"]

        endpoint = cluster.get("endpoint")
        ca_data = (cluster.get("certificateAuthority") or {}).get("data")
        if not endpoint or not ca_data:
            raise ProviderError(
                f"EKS cluster {cluster_name} has no endpoint or certificate authority data",
                details={"cluster": cluster_name, "status": cluster.get("status")},
            )
        try:
            ca_pem = base64.b64decode(ca_data)
        except ValueError as e:
            raise ProviderError(f"Failed to decode CA data of EKS cluster {cluster_name}: {e}") from e

        with tempfile.NamedTemporaryFile(prefix=f"eks-{cluster_name}-", suffix=".crt", delete=False) as f:
            f.write(ca_pem)
            ca_path = f.name
        with self._lock:
            self._temp_files.append(ca_path)

        configuration = k8s_client.Configuration()
        configuration.host = endpoint
        configuration.ssl_ca_cert = ca_path
        configuration.api_key = {"authorization": self.eks_token(cluster_name)}
        configuration.api_key_prefix = {"authorization": "Bearer"}
        api_client = k8s_client.ApiClient(configuration)
        return KubernetesClients(
            core=k8s_client.CoreV1Api(api_client),
            apps=k8s_client.AppsV1Api(api_client),
            batch=k8s_client.BatchV1Api(api_client),
        )

    def close(self) -> None:
        """Remove the CA bundle files written for EKS clusters."""
        with self._lock:
            paths, self._temp_files = self._temp_files, []
        for path in paths:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
