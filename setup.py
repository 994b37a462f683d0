"""
Setup script for Hybrid Orchestrator

A "Generate -> Synthesize" workflow orchestration engine that fans prompts out
to several AI-model backends and folds their answers together, with an
encrypted credential vault and circuit breaking.
"""

from setuptools import setup, find_packages

setup(
    name="hybrid-orchestrator",
    version="1.0.0",
    description="Generate-then-synthesize orchestration across multiple AI model backends",
    long_description=__doc__,
    author="Hybrid Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Framework :: AsyncIO",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    keywords="llm orchestration, workflow, synthesis, async, credentials",
    packages=find_packages(exclude=["tests", "tests.*", "examples", "examples.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Job and credential persistence (PostgreSQL)
        "asyncpg>=0.27.0",
        # AES-256-GCM credential encryption
        "cryptography>=41.0.0",
        # Workflow definitions
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
    },
    include_package_data=True,
    package_data={
        "hybrid_orchestrator": ["sql/*.sql"],
    },
)
