"""
setup.py for the rtimpc Python package.

The package sources live under python/:
    pip install -e .

Development tools and the optional plotting backend are extras:
    pip install -e ".[dev,plot]"
"""

from setuptools import find_packages, setup

setup(
    name="rtimpc",
    version="0.1.0",
    description="Real-time iteration nonlinear MPC: shooting transcription and SQP",
    package_dir={"": "python"},
    packages=find_packages("python"),
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.20",
        "scipy>=1.7",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
            "hypothesis>=6.0",
            "black>=23.0",
            "ruff>=0.1.0",
            "mypy>=1.0",
            "osqp>=0.6",
        ],
        "plot": [
            "matplotlib>=3.5",
        ],
    },
)
