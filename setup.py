#!/usr/bin/env python3
import sys
from setuptools import setup
from pathlib import Path

if sys.version_info < (3, 11):
	sys.exit("Error: multirun requires Python 3.11 or later")

README_PATH = Path(__file__).parent / "README.md"
with open(README_PATH, "r", encoding="utf-8") as f:
	long_description = f.read()

VERSION = "1.0.0"
REQUIREMENTS = []
EXTRAS_REQUIRE = {
	"dev": [
		"pytest>=6.0",
		"black>=22.0",
		"flake8>=4.0",
		"mypy>=0.950",
	],
	"test": [
		"pytest>=6.0",
		"pytest-cov>=2.0",
	],
}

# Classifiers for PyPI
CLASSIFIERS = [
	"Development Status :: 4 - Beta",
	"Environment :: Console",
	"Intended Audience :: Developers",
	"License :: OSI Approved :: BSD License",
	"Operating System :: MacOS",
	"Operating System :: POSIX",
	"Operating System :: Unix",
	"Programming Language :: Python :: 3",
	"Programming Language :: Python :: 3.11",
	"Programming Language :: Python :: 3.12",
	"Programming Language :: Python :: 3.13",
	"Programming Language :: Python :: 3 :: Only",
	"Topic :: Utilities",
	"Topic :: System :: Shells",
	"Topic :: Software Development :: Build Tools",
]

# Keywords for PyPI search
KEYWORDS = [
	"multirun",
	"process",
	"command",
	"parallel",
	"concurrent",
	"color",
	"prefix",
	"cli",
	"services",
]

setup(
	name="multirun-sh",
	version=VERSION,
	description="Runs a few commands in parallel with colored, prefixed output",
	long_description=long_description,
	long_description_content_type="text/markdown",
	license="BSD-3-Clause",
	classifiers=CLASSIFIERS,
	keywords=" ".join(KEYWORDS),
	# Package discovery
	packages=[],  # No packages, just a single module
	package_dir={"": "src/py"},
	py_modules=["multirun"],
	# Dependencies
	python_requires=">=3.11",
	install_requires=REQUIREMENTS,
	extras_require=EXTRAS_REQUIRE,
	# Entry points for command-line usage
	entry_points={
		"console_scripts": [
			"multirun=multirun:cli",
		],
	},
	zip_safe=False,
	platforms=["unix", "linux", "osx"],
)
