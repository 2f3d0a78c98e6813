"""
Pytest configuration file.

Sets up the Python path so test files can import the ecr_cleaner package
from the python/ directory, and provides fakes for paginated AWS clients.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)

ACCOUNT = "123456789012"
REGION = "us-west-2"
REGISTRY = f"{ACCOUNT}.dkr.ecr.{REGION}.amazonaws.com"
NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def paginated():
    """Make client.get_paginator(op).paginate(**kwargs) yield canned pages.

    pages_by_operation maps an operation name to a list of pages, or to a
    callable receiving the paginate kwargs and returning the pages.
    """
    def _configure(client, pages_by_operation):
        def get_paginator(operation):
            paginator = MagicMock(name=f"{operation}_paginator")

            def paginate(**kwargs):
                pages = pages_by_operation.get(operation, [])
                if callable(pages):
                    pages = pages(kwargs)
                return iter(pages)

            paginator.paginate.side_effect = paginate
            return paginator

        client.get_paginator.side_effect = get_paginator
        return client

    return _configure


@pytest.fixture
def image_detail():
    """Factory for ecr:DescribeImages imageDetails entries."""
    def _make(digest, days_old, tags=(), repo="app", size=1000,
              artifact_media_type="application/vnd.docker.container.image.v1+json",
              manifest_media_type="application/vnd.docker.distribution.manifest.v2+json"):
        detail = {
            "registryId": ACCOUNT,
            "repositoryName": repo,
            "imageDigest": digest,
            "imagePushedAt": NOW - timedelta(days=days_old),
            "imageSizeInBytes": size,
            "imageManifestMediaType": manifest_media_type,
        }
        if artifact_media_type:
            detail["artifactMediaType"] = artifact_media_type
        if tags:
            detail["imageTags"] = list(tags)
        return detail

    return _make
