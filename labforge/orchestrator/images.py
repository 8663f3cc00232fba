"""Static lab type registry: lab type -> container image and keep-alive command."""
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple

from labforge.config import ImageSettings, config as app_main_config
from labforge.exceptions import UnsupportedLabTypeError
from labforge.orchestrator.base import WorkloadSpec


class ImageRegistry:
    """Immutable mapping loaded once from configuration."""

    def __init__(self, images: Optional[Mapping[str, ImageSettings]] = None):
        source = images if images is not None else app_main_config.images
        self._images: Mapping[str, ImageSettings] = MappingProxyType(
            {lab_type: settings.model_copy(deep=True) for lab_type, settings in source.items()}
        )

    def lab_types(self) -> List[str]:
        return sorted(self._images)

    def __contains__(self, lab_type: str) -> bool:
        return lab_type in self._images

    def resolve(self, spec: WorkloadSpec) -> Tuple[str, List[str]]:
        """Returns (image, command) for a workload.

        Template-driven workloads use the template's base image and only need
        to stay alive for the lab's duration; their setup steps install tools.
        """
        if spec.template is not None:
            if not spec.template.base_image:
                raise UnsupportedLabTypeError(spec.lab_type)
            return spec.template.base_image, ["/bin/sh", "-c", f"sleep {spec.duration_seconds}"]

        settings = self._images.get(spec.lab_type)
        if settings is None:
            raise UnsupportedLabTypeError(spec.lab_type)
        return settings.image, list(settings.command)
