# prophet/engine/pipelines/__init__.py
from ..registry import PipelineRegistry
from . import content, events, insights, photos, refresh_all, traffic, visibility, weather

DEFINITIONS = (
    content.DEFINITION,
    visibility.DEFINITION,
    events.DEFINITION,
    insights.DEFINITION,
    photos.DEFINITION,
    traffic.DEFINITION,
    weather.DEFINITION,
    refresh_all.DEFINITION,
)


def register_all(registry: PipelineRegistry) -> PipelineRegistry:
    for definition in DEFINITIONS:
        registry.register(definition)
    return registry


def build_registry() -> PipelineRegistry:
    return register_all(PipelineRegistry())
