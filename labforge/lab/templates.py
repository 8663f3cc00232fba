"""
Lab Template Catalogue
Read and write access to lab templates and their setup steps, plus the
seed set installed into an empty store at start-up.
"""
import json
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from labforge.config import config as app_main_config
from labforge.exceptions import TemplateNotFoundError, ValidationError
from labforge.logger import logger
from labforge.schema import Difficulty, LabTemplate, SetupStep
from labforge.store import LabStore

SeedTemplate = Tuple[LabTemplate, List[SetupStep]]


def _steps(template_id: str, rows: Sequence[Tuple[int, str, str, str, int]]) -> List[SetupStep]:
    return [
        SetupStep(
            template_id=template_id,
            step_order=order,
            title=title,
            description=description,
            setup_command=command,
            expected_exit_code=0,
            timeout_seconds=timeout,
            retry_count=2,
            continue_on_failure=False,
            working_directory="/",
        )
        for order, title, description, command, timeout in rows
    ]


def _python_template() -> SeedTemplate:
    template = LabTemplate(
        id="python-dev-template",
        name="Python Development Environment",
        description="Complete Python development environment with popular packages and tools",
        lab_type="python",
        base_image="python:3.9-slim",
        duration_minutes=120,
        difficulty=Difficulty.BEGINNER,
        total_setup_time_seconds=300,
        success_criteria="Python environment ready with pip, jupyter, and common packages installed",
    )
    return template, _steps(template.id, [
        (1, "Update System Packages", "Update package manager and install basic tools",
         "apt-get update && apt-get install -y curl wget git vim", 120),
        (2, "Install Python Packages", "Install essential Python packages",
         "pip install --upgrade pip && pip install jupyter pandas numpy matplotlib requests flask", 180),
        (3, "Setup Jupyter", "Configure Jupyter notebook",
         "jupyter notebook --generate-config && echo \"c.NotebookApp.ip = '0.0.0.0'\" >> ~/.jupyter/jupyter_notebook_config.py", 60),
        (4, "Create Sample Project", "Create a sample Python project structure",
         "mkdir -p /workspace/sample-project && cd /workspace/sample-project && echo 'print(\"Hello from Python Lab!\")' > hello.py", 30),
    ])


def _docker_template() -> SeedTemplate:
    template = LabTemplate(
        id="docker-dev-template",
        name="Docker Development Environment",
        description="Docker development environment with Docker-in-Docker capability",
        lab_type="docker",
        base_image="docker:20.10-dind",
        duration_minutes=180,
        difficulty=Difficulty.INTERMEDIATE,
        total_setup_time_seconds=240,
        success_criteria="Docker daemon running and able to build/run containers",
    )
    return template, _steps(template.id, [
        (1, "Start Docker Daemon", "Start Docker daemon in background",
         "dockerd-entrypoint.sh &", 30),
        (2, "Wait for Docker", "Wait for Docker daemon to be ready",
         "sleep 10 && docker info", 30),
        (3, "Install Docker Compose", "Install Docker Compose tool",
         "apk add --no-cache docker-compose", 60),
        (4, "Create Sample Dockerfile", "Create a sample Dockerfile for testing",
         "mkdir -p /workspace/docker-demo && cd /workspace/docker-demo && "
         "printf 'FROM alpine:latest\\nRUN echo \"Hello from Docker Lab!\"\\nCMD [\"echo\", \"Container is running!\"]\\n' > Dockerfile", 30),
        (5, "Build Sample Image", "Build the sample Docker image",
         "cd /workspace/docker-demo && docker build -t sample-app .", 60),
    ])


def _nodejs_template() -> SeedTemplate:
    template = LabTemplate(
        id="nodejs-dev-template",
        name="Node.js Development Environment",
        description="Node.js development environment with popular frameworks and tools",
        lab_type="nodejs",
        base_image="node:16-alpine",
        duration_minutes=90,
        difficulty=Difficulty.BEGINNER,
        total_setup_time_seconds=180,
        success_criteria="Node.js environment ready with npm packages and sample app",
    )
    return template, _steps(template.id, [
        (1, "Install System Tools", "Install basic development tools",
         "apk add --no-cache git vim curl", 60),
        (2, "Create Sample Project", "Create a sample Node.js project",
         "mkdir -p /workspace/nodejs-app && cd /workspace/nodejs-app && npm init -y", 30),
        (3, "Install Dependencies", "Install popular Node.js packages",
         "cd /workspace/nodejs-app && npm install express nodemon cors dotenv", 90),
        (4, "Create Sample App", "Create a sample Express.js application",
         "cd /workspace/nodejs-app && printf '%s\\n' "
         "'const express = require(\"express\");' "
         "'const app = express();' "
         "'app.get(\"/\", (req, res) => res.json({message: \"Hello from Node.js Lab!\"}));' "
         "'app.listen(3000, () => console.log(\"Server running on port 3000\"));' > app.js", 30),
    ])


def _johndoe_template() -> SeedTemplate:
    template = LabTemplate(
        id="johndoe-user-template",
        name="JohnDoe User Environment",
        description="Complete development environment with johndoe user setup and development tools",
        lab_type="johndoe",
        base_image="ubuntu:20.04",
        duration_minutes=150,
        difficulty=Difficulty.INTERMEDIATE,
        total_setup_time_seconds=480,
        success_criteria="johndoe user created and environment ready with development tools",
    )
    as_johndoe = "su - johndoe -c "
    return template, _steps(template.id, [
        (1, "Wait for System Ready", "Wait for container to be fully ready and release any locks",
         "sleep 15 && echo 'System ready'", 30),
        (2, "Check and Wait for APT Lock", "Ensure no apt processes are running",
         "while fuser /var/lib/dpkg/lock-frontend >/dev/null 2>&1 || fuser /var/lib/apt/lists/lock >/dev/null 2>&1; "
         "do echo 'Waiting for apt lock...'; sleep 5; done && echo 'APT ready'", 120),
        (3, "Update System and Install Basic Tools", "Update package manager and install essential system tools",
         "DEBIAN_FRONTEND=noninteractive apt-get update && "
         "DEBIAN_FRONTEND=noninteractive apt-get install -y curl wget git vim sudo passwd adduser", 180),
        (4, "Create JohnDoe User", "Create johndoe user with home directory and bash shell",
         "adduser --disabled-password --gecos '' johndoe && echo 'johndoe:password123' | chpasswd", 30),
        (5, "Grant Sudo Privileges", "Add johndoe to sudo group for administrative privileges",
         "usermod -aG sudo johndoe", 10),
        (6, "Setup JohnDoe Home Directory", "Create workspace and setup basic directories for johndoe",
         as_johndoe + "'mkdir -p /home/johndoe/workspace /home/johndoe/projects /home/johndoe/scripts'", 20),
        (7, "Install Development Tools", "Install Python, Node.js, and other development tools",
         "DEBIAN_FRONTEND=noninteractive apt-get install -y python3 python3-pip nodejs npm build-essential", 240),
        (8, "Setup Git Configuration", "Configure git for johndoe user",
         as_johndoe + "'git config --global user.name \"John Doe\" && git config --global user.email \"johndoe@example.com\"'", 15),
        (9, "Install Python Packages for JohnDoe", "Install essential Python packages in johndoe's environment",
         as_johndoe + "'pip3 install --user jupyter pandas numpy matplotlib requests flask'", 180),
        (10, "Setup Bash Profile", "Configure bash profile and aliases for johndoe",
         "printf '%s\\n' 'export PATH=$HOME/.local/bin:$PATH' 'alias ll=\"ls -la\"' "
         "'alias workspace=\"cd /home/johndoe/workspace\"' >> /home/johndoe/.bashrc && "
         "chown johndoe:johndoe /home/johndoe/.bashrc", 15),
        (11, "Create Sample Projects", "Create sample projects and scripts for johndoe",
         "printf '%s\\n' 'print(\"Hello from JohnDoe Lab!\")' > /home/johndoe/workspace/hello.py && "
         "printf '%s\\n' 'console.log(\"Hello from JohnDoe Node.js!\");' > /home/johndoe/workspace/hello.js && "
         "printf '%s\\n' '#!/bin/bash' 'echo \"Welcome JohnDoe!\"' 'whoami' 'pwd' > /home/johndoe/scripts/welcome.sh && "
         "chmod +x /home/johndoe/scripts/welcome.sh && chown -R johndoe:johndoe /home/johndoe", 30),
        (12, "Setup SSH Keys", "Generate SSH keys for johndoe user",
         as_johndoe + "'mkdir -p /home/johndoe/.ssh && ssh-keygen -t rsa -b 4096 -f /home/johndoe/.ssh/id_rsa -N \"\" && "
         "cat /home/johndoe/.ssh/id_rsa.pub > /home/johndoe/.ssh/authorized_keys && "
         "chmod 600 /home/johndoe/.ssh/authorized_keys && chmod 700 /home/johndoe/.ssh'", 30),
        (13, "Verify JohnDoe Environment", "Verify that johndoe user environment is properly configured",
         as_johndoe + "'whoami && pwd && ls -la /home/johndoe/ && python3 --version && node --version && git --version'", 30),
        (14, "Configure Default User Login", "Setup environment to switch to johndoe user by default",
         "printf '%s\\n' '#!/bin/bash' 'if [ \"$USER\" = \"root\" ] && [ -t 0 ]; then' '  exec su - johndoe' 'fi' "
         "> /etc/profile.d/johndoe-login.sh && chmod +x /etc/profile.d/johndoe-login.sh", 15),
        (15, "Final Verification", "Final check that everything is working",
         as_johndoe + "'echo \"JohnDoe environment setup complete!\" && /home/johndoe/scripts/welcome.sh'", 20),
    ])


def default_templates() -> List[SeedTemplate]:
    return [_python_template(), _docker_template(), _nodejs_template(), _johndoe_template()]


def load_templates_file(path: Path) -> List[SeedTemplate]:
    """Reads seed templates from a JSON list of template objects, each with a ``steps`` list."""
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Could not read templates file {path}: {e}") from e
    if not isinstance(raw, list):
        raise ValidationError(f"Templates file {path} must contain a JSON list")

    seeds: List[SeedTemplate] = []
    for entry in raw:
        entry = dict(entry)
        step_rows = entry.pop("steps", [])
        try:
            template = LabTemplate(**entry)
            steps = [SetupStep(template_id=template.id, **row) for row in step_rows]
        except (PydanticValidationError, TypeError) as e:
            raise ValidationError(f"Invalid template in {path}: {e}") from e
        seeds.append((template, steps))
    return seeds


def validate_steps(steps: Sequence[SetupStep]) -> None:
    seen: Dict[int, str] = {}
    for step in steps:
        if step.step_order in seen:
            raise ValidationError(f"Duplicate stepOrder {step.step_order} ('{seen[step.step_order]}' and '{step.title}')")
        seen[step.step_order] = step.title
        if not step.setup_command.strip():
            raise ValidationError(f"Step {step.step_order} ('{step.title}') has an empty setup command")
        if step.timeout_seconds <= 0:
            raise ValidationError(f"Step {step.step_order} must have a positive timeout")
        if step.retry_count < 1:
            raise ValidationError(f"Step {step.step_order} must allow at least one attempt")


class TemplateService:
    """Template catalogue backed by the lab store."""

    def __init__(self, store: LabStore):
        self.store = store

    async def list_templates(self) -> List[LabTemplate]:
        return await self.store.list_active_templates()

    async def list_templates_by_type(self, lab_type: str) -> List[LabTemplate]:
        return await self.store.list_templates_by_type(lab_type)

    async def list_templates_by_difficulty(self, difficulty: Difficulty) -> List[LabTemplate]:
        return await self.store.list_templates_by_difficulty(difficulty)

    async def search_templates(self, keyword: str) -> List[LabTemplate]:
        needle = keyword.strip().lower()
        templates = await self.store.list_active_templates()
        if not needle:
            return templates
        return [t for t in templates if needle in t.name.lower() or needle in t.description.lower()]

    async def get_template(self, template_id: str, active_only: bool = False) -> LabTemplate:
        template = await self.store.get_template(template_id)
        if template is None or (active_only and not template.is_active):
            raise TemplateNotFoundError(template_id)
        return template

    async def get_template_steps(self, template_id: str) -> List[SetupStep]:
        await self.get_template(template_id)
        return await self.store.list_steps(template_id)

    async def create_template(self, template: LabTemplate, steps: Sequence[SetupStep]) -> LabTemplate:
        if not template.id.strip() or not template.name.strip():
            raise ValidationError("Template id and name are required")
        if await self.store.get_template(template.id) is not None:
            raise ValidationError(f"Template already exists: {template.id}")
        steps = [step.model_copy(update={"template_id": template.id}) for step in steps]
        validate_steps(steps)

        await self.store.save_template(template)
        for step in steps:
            await self.store.save_step(step)
        logger.info(f"TemplateService: Created template '{template.name}' ({template.id}) with {len(steps)} steps.")
        return template

    async def deactivate_template(self, template_id: str) -> LabTemplate:
        template = await self.get_template(template_id)
        if template.is_active:
            template.is_active = False
            await self.store.save_template(template)
            logger.info(f"TemplateService: Deactivated template {template_id}.")
        return template

    async def delete_template(self, template_id: str) -> None:
        if not await self.store.delete_template(template_id):
            raise TemplateNotFoundError(template_id)
        logger.info(f"TemplateService: Deleted template {template_id} and its steps.")

    async def seed_defaults(self, templates_file: Optional[Path] = None) -> int:
        """Installs the seed templates when the store holds none. Returns how many were added."""
        if await self.store.count_templates() > 0:
            logger.debug("TemplateService: Store already holds templates; skipping seed.")
            return 0

        templates_file = templates_file or app_main_config.templates_file
        if templates_file is not None:
            logger.info(f"TemplateService: Loading seed templates from {templates_file}")
            seeds = load_templates_file(templates_file)
        else:
            seeds = default_templates()

        for template, steps in seeds:
            await self.create_template(template, steps)
        logger.info(f"TemplateService: Seeded {len(seeds)} default templates.")
        return len(seeds)
