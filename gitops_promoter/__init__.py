"""
gitops-promoter — image-tag promotion across GitOps environments.
"""

__version__ = "0.1.0"
