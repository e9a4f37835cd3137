"""
Bulk Video Pipeline

Rows in, finished videos out:
  Import    — CSV / Google Sheet → batch + one item per row
  Generate  — Scene images → Image-to-video animation → Multi-format render
  Repair    — Regenerate one item, one scene's image or one scene's clip; re-render one format
  Download  — Signed links or a streamed ZIP of every finished video
"""

from .orchestrator import BulkJobOrchestrator
from .routes import router
from .models import RenderStatus, SceneStatus, VideoStatus

__all__ = [
    "BulkJobOrchestrator",
    "router",
    "RenderStatus",
    "SceneStatus",
    "VideoStatus",
]
