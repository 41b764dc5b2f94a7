[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "enclaver"
version = "0.1.0"
description = "Asyncio ingress and egress proxies between a host and an enclave over vsock, with TLS helpers"
requires-python = ">=3.10"
dependencies = []
keywords = ["enclave", "vsock", "proxy", "tls", "asyncio", "http-proxy"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "cryptography",
]

[tool.hatch.build.targets.wheel]
packages = ["enclaver"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
