"""Entry paths into the portal and the shared access decision."""

from portal.auth.pipeline import AccessOutcome, AccessPipeline

__all__ = ["AccessOutcome", "AccessPipeline"]
