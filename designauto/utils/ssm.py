# designauto/utils/ssm.py
import os
from functools import lru_cache

import boto3

# Default region fallback (so code doesn't raise NoRegionError)
_REGION = os.getenv("AWS_DEFAULT_REGION", os.getenv("AWS_REGION", "sa-east-1"))
# Parameters live under a common path, e.g. /designauto/HOTMART_SECRET
_PREFIX = os.getenv("SSM_PREFIX", "/designauto/")


@lru_cache(maxsize=1)
def _ssm_client():
    return boto3.client("ssm", region_name=_REGION)


def param_name(name: str) -> str:
    if name.startswith("/"):
        return name
    return f"{_PREFIX.rstrip('/')}/{name}"


def get_param(name: str, decrypt: bool = True) -> str:
    """Fetch a parameter from AWS SSM Parameter Store (raises on AWS errors)."""
    client = _ssm_client()
    resp = client.get_parameter(Name=param_name(name), WithDecryption=decrypt)
    return resp["Parameter"]["Value"]
