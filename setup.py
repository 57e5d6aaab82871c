"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="support-chat",
    version="0.1.0",
    description="Live customer-support conversation engine with AI replies and human takeover",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.1",
        "prometheus-client>=0.19",
        "opentelemetry-instrumentation-fastapi>=0.43b0",
        "google-generativeai>=0.5",
        "httpx>=0.27",
        "aiosmtplib>=3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
        "server": ["uvicorn>=0.27"],
    },
)
