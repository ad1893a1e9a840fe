"""Setup script for the Meta Ads API client runtime."""

from setuptools import setup, find_packages

setup(
    name="meta-ads-runtime",
    version="0.1.0",
    description="Quota-safe, retrying Meta Marketing API client runtime for agents",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.109.0",
        "httpx>=0.27.0",
        "redis>=5.0.1",
        "tenacity>=8.2.3",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "python-dotenv>=1.0.0",
        "pyjwt[crypto]>=2.8.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
)
