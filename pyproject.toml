[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "leasequeue"
version = "0.1.0"
description = "A Redis-backed job queue with leased tasks, delayed and periodic scheduling, served over gRPC"
requires-python = ">=3.10"
keywords = ["queue", "redis", "grpc", "scheduler", "lease", "jobs"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "redis>=5.0.1",
    "grpcio>=1.60",
    "protobuf>=4.25",
    "python-dotenv>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
leasequeue-server = "leasequeue.server:main"
leasequeue-worker = "leasequeue.worker:main"

[tool.hatch.build.targets.wheel]
packages = ["leasequeue"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
