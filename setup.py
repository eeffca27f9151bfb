"""
Setup script for examfunnel.

examfunnel is the adaptive question funnel behind an exam-prep tool:

1. Target Selection - pick the concepts a learner should be tested on next
2. Sourcing - curated bank, cached bank, then on-demand generation
3. Integrity - deduplicate and answer-key validate every question
4. Mastery - Bayesian per-concept updates from learner responses
"""

from setuptools import find_packages, setup

setup(
    name="examfunnel",
    version="0.1.0",
    description="Adaptive question funnel with answer-key validation and Bayesian mastery tracking",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    install_requires=[
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="learning adaptive-testing question-bank education",
)
