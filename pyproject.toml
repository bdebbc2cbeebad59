[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "aigw"
version = "0.1.0"
description = "Processing engine for an AI gateway: routes OpenAI-style chat requests to OpenAI or AWS Bedrock backends, translates them and reports token usage."
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "ai-gateway",
    "llm",
    "openai",
    "bedrock",
    "proxy",
    "ext-proc",
    "routing",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Internet :: WWW/HTTP",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["aigw"]

[tool.hatch.build.targets.sdist]
include = [
    "aigw",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
