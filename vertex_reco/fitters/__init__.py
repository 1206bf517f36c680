from .billoir import BilloirTrack, BilloirVertex, FullBilloirVertexFitter

__all__ = ["BilloirTrack", "BilloirVertex", "FullBilloirVertexFitter"]
