[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nfextras"
version = "0.1.0"
description = "Firewall match and target logic on raw packets: tarpit replies, fuzzy rate limiting, GeoIP ranges, quotas, scan detection, length and IPv4 option matches"
requires-python = ">=3.10"
dependencies = []
keywords = ["firewall", "netfilter", "packet", "tarpit", "quota", "geoip", "rate-limit"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Firewalls",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nfextras"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
strict = true
