"""Course Media Backend Application.

Media processing and delivery for the course marketplace: uploaded lesson
videos are transcoded in background jobs and streamed back to enrolled
students with byte-range support.

Modules:
    - core: Configuration, database, Redis, storage, logging and metrics
    - modules.job: Job queue and worker pool
    - modules.transcoding: Quality ladder, ffmpeg and the processing pipeline
    - modules.video: Video upload, status and deletion
    - modules.streaming: Entitlement-gated ranged playback
    - modules.course: Materials, enrollments and watch progress
    - modules.auth: Bearer token verification
"""

__version__ = "0.1.0"
