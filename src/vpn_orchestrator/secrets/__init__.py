from .aws import AwsSecretManager
from .base import SecretManager

__all__ = ["AwsSecretManager", "SecretManager"]
