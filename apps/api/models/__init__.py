"""Models package."""

from .user import User
from .chunked_upload import ChunkedUpload, UploadChunk
from .reference_profile import ReferenceProfile
from .computed_threshold import ComputedThreshold
