"""Setup configuration for conn-jobs library."""
from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="conn-jobs",
    version="0.1.0",
    author="conn-jobs Contributors",
    description="Connection-scoped job orchestration for marketplace integrations",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["conn_jobs", "conn_jobs.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    python_requires=">=3.9",
    install_requires=[
        "asyncpg>=0.27.0",
        "boto3>=1.26.0",
        "redis>=5.0.1",
        "pydantic>=2.0.0",
        "python-dateutil>=2.8.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "testcontainers[postgres]>=3.7.0",
            "black>=23.0.0",
            "mypy>=1.0.0",
            "flake8>=6.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "conn-jobs-worker=conn_jobs.worker_main:main",
            "conn-jobs-scheduler=conn_jobs.scheduler_main:main",
        ],
    },
)
