"""ugc_motion package.

Generation pipeline for short vertical marketing videos: plan model and
validation, the resumable job state machine, composite and video synthesis
stages, clip assembly and the reusable clip index.
"""

from . import errors, schemas

__all__ = ["errors", "schemas"]
__version__ = "0.1.0"
