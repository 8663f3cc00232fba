from setuptools import find_packages, setup
from pathlib import Path

# Function to read dependencies from requirements.txt
def load_requirements(filename_req="requirements.txt"):
    requirements_path = Path(__file__).resolve().parent / filename_req
    if not requirements_path.exists():
        print(f"Warning: '{filename_req}' not found at {requirements_path}. Using a fallback list of dependencies for setup.py.")
        # Keep in sync with requirements.txt
        return [
            "pydantic>=2.7",
            "python-dotenv>=1.0",
            "loguru>=0.7",
            "tenacity>=8.2",
            "docker>=7.0",
            "kubernetes>=29.0",
        ]
    with open(requirements_path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip() and not line.startswith("#")]

readme_path = Path(__file__).resolve().parent / "README.md"
if readme_path.exists():
    with open(readme_path, "r", encoding="utf-8") as fh:
        long_description = fh.read()
else:
    long_description = "LabForge - provisions ephemeral sandbox labs on Kubernetes or Docker, runs templated setup pipelines in them and reclaims them on expiry."

setup(
    name="labforge",
    version="0.1.0",
    author="LabForge Project",
    description="LabForge: ephemeral sandbox lab provisioning with templated, retrying setup pipelines and expiry sweeping.",
    long_description=long_description,
    long_description_content_type="text/markdown",

    packages=find_packages(exclude=["*.tests", "*.tests.*", "tests.*", "tests", "config"]),
    py_modules=["main"],

    install_requires=load_requirements("requirements.txt"),
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },

    python_requires=">=3.11, <3.14",

    entry_points={
        "console_scripts": [
            "labforge=main:main",
        ],
    },

    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "Topic :: System :: Distributed Computing",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Operating System :: OS Independent",
    ],
    keywords="sandbox lab kubernetes docker provisioning setup pipeline",
    include_package_data=True,
)
