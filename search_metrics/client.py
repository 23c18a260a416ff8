"""Resolve the OpenSearch endpoint from SSM and build a SigV4-signed client."""

import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from opensearchpy import AWSV4SignerAuth, OpenSearch, RequestsHttpConnection

logger = logging.getLogger(__name__)


class ClientInitializationError(RuntimeError):
    """The cluster endpoint or credentials could not be resolved."""


def resolve_endpoint(parameter_name: str, region: str, ssm_client=None) -> str:
    """Read the cluster URL from Parameter Store."""
    ssm_client = ssm_client or boto3.client("ssm", region_name=region)
    try:
        response = ssm_client.get_parameter(Name=parameter_name, WithDecryption=True)
    except (BotoCoreError, ClientError) as e:
        raise ClientInitializationError(
            f"Failed to retrieve OpenSearch URL from Parameter Store ({parameter_name}): {e}"
        ) from e

    host = (response.get("Parameter") or {}).get("Value")
    if not host:
        raise ClientInitializationError(
            f"Failed to retrieve OpenSearch URL from Parameter Store ({parameter_name}): empty value"
        )
    return host


def build_client(host: str, region: str, credentials=None, timeout: int = 30) -> OpenSearch:
    if credentials is None:
        credentials = boto3.Session().get_credentials()
    if credentials is None:
        raise ClientInitializationError("No AWS credentials found in the default credential chain")

    auth = AWSV4SignerAuth(credentials, region, "es")
    return OpenSearch(
        hosts=[host],
        http_auth=auth,
        use_ssl=host.startswith("https") or "://" not in host,
        verify_certs=True,
        connection_class=RequestsHttpConnection,
        timeout=timeout,
    )


def initialize_client(parameter_name: str, region: str, timeout: int = 30) -> OpenSearch:
    host = resolve_endpoint(parameter_name, region)
    client = build_client(host, region, timeout=timeout)
    logger.info("OpenSearch client initialized successfully")
    logger.info(f"Connected to: {host}")
    return client
