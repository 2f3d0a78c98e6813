"""
Live-set scanners, one per platform that can keep an ECR image in use.
"""

from ecr_cleaner.scanners.base import Scanner, chunked, paginate, run_bounded
from ecr_cleaner.scanners.ecs import ECSScanner
from ecr_cleaner.scanners.eks import EKSScanner
from ecr_cleaner.scanners.external import ExternalCommandScanner, run_command
from ecr_cleaner.scanners.files import load_reference_files, read_reference_file
from ecr_cleaner.scanners.lambda_functions import LambdaScanner

__all__ = [
    "Scanner",
    "ECSScanner",
    "EKSScanner",
    "ExternalCommandScanner",
    "LambdaScanner",
    "chunked",
    "load_reference_files",
    "paginate",
    "read_reference_file",
    "run_bounded",
    "run_command",
]
