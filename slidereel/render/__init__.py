from slidereel.render.composition import CompositionRenderer, RemotionCliEngine
from slidereel.render.filter_graph import FilterGraphRenderer, build_filter_graph
from slidereel.render.loudness import LoudnessNormalizer
from slidereel.render.media_engine import EmbeddedMediaEngine
from slidereel.render.timeline import compute_timeline

__all__ = [
    "CompositionRenderer",
    "RemotionCliEngine",
    "FilterGraphRenderer",
    "build_filter_graph",
    "LoudnessNormalizer",
    "EmbeddedMediaEngine",
    "compute_timeline",
]
