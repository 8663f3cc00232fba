from labforge.lab.lifecycle import LabManager
from labforge.lab.pipeline import SetupPipeline, SetupWorkerPool
from labforge.lab.sweeper import ExpirySweeper
from labforge.lab.templates import TemplateService, default_templates

__all__ = [
    "LabManager",
    "SetupPipeline",
    "SetupWorkerPool",
    "ExpirySweeper",
    "TemplateService",
    "default_templates",
]
