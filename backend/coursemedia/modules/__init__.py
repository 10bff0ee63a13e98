"""Application modules.

This package contains the feature modules of the media service:
- auth: Bearer token verification and principals
- course: Material and enrollment lookups, watch progress
- job: Background job queue and workers
- transcoding: Rendition ladder and processing pipeline
- video: Video upload and lifecycle
- streaming: Byte-range playback
"""
