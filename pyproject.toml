[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "upstreamer"
version = "0.1.0"
description = "Bridge messages between transports with forwarding rules between endpoints."
requires-python = ">=3.10"
dependencies = []
keywords = ["streamer", "bridge", "transport", "forwarding", "publish-subscribe", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["upstreamer"]

[tool.hatch.build.targets.sdist]
include = ["upstreamer", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
