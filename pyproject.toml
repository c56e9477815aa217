[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "codeidx"
version = "0.1.0"
description = "Building blocks for a codebase indexing service: shared data types, a Redis cache, queue and locks, embeddings, reranking and Weaviate vector search."
requires-python = ">=3.10"
keywords = ["codebase", "indexing", "embeddings", "vector-search", "redis", "weaviate", "reranking"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Typing :: Typed",
]
dependencies = [
    "redis",
    "httpx",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["codeidx"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
