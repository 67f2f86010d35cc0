"""branchbox_shared — Shared utilities for BranchBox Lambda functions.

Provides:
    - Lazy-singleton boto3 clients with bounded timeouts
    - HTTP response helpers with CORS
    - DynamoDB serialization/deserialization
    - Structured observability log lines
"""

__version__ = "1.0.0"
