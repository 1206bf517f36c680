from vertex_reco.linearizers.linearizer import TrackLinearizer
from vertex_reco.linearizers.straight import StraightLineLinearizer
from vertex_reco.linearizers.helical import HelicalTrackLinearizer, C_LIGHT

__all__ = ["TrackLinearizer", "StraightLineLinearizer", "HelicalTrackLinearizer", "C_LIGHT"]
