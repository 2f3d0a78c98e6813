"""
Find and delete Amazon ECR images that no ECS, Lambda or EKS workload uses.
"""

__version__ = "0.1.0"
