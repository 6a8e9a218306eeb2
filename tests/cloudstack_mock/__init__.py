"""In-memory CloudStack for tests.

Provides:
- MockCloudStackState: resources of a simulated installation
- MockCloudStackClient: the real client with the wire call replaced
"""

from .client import MOCK_API, MockCloudStackClient
from .state import MockApiError, MockCloudStackState, new_id

__all__ = [
    "MOCK_API",
    "MockApiError",
    "MockCloudStackClient",
    "MockCloudStackState",
    "new_id",
]
