"""S3 path utilities."""


class S3Path:
    """S3 path utilities for normalizing and handling S3 keys."""

    S3_PREFIX = "s3://"
    S3_PREFIX_LENGTH = len(S3_PREFIX)

    @staticmethod
    def normalize(path: str) -> str:
        """Remove the s3:// prefix, if present, and any leading separator."""
        if path.startswith(S3Path.S3_PREFIX):
            path = path[S3Path.S3_PREFIX_LENGTH:]
        return path.lstrip("/")

    @staticmethod
    def basename(path: str) -> str:
        normalized = path.rstrip("/")
        if "/" not in normalized:
            return normalized
        return normalized.rsplit("/", 1)[-1]

    @staticmethod
    def local_path(root: str, key: str) -> str:
        """Mirror an object key under a local root directory."""
        return f"{root.rstrip('/')}/{S3Path.normalize(key)}"
