[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vsfs"
version = "0.1.0"
description = "Create, journal and check tiny VSFS disk images"
requires-python = ">=3.10"
dependencies = []
keywords = ["filesystem", "journal", "disk image", "fsck", "vsfs"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
vsfs-mkfs = "vsfs.mkfs:main"
vsfs-journal = "vsfs.journal:main"
vsfs-validate = "vsfs.validator:main"

[tool.hatch.build.targets.wheel]
packages = ["vsfs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
