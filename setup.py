# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""pyftpguard installer.

$ python setup.py install
"""

import ast
import os
import sys

WINDOWS = os.name == "nt"

# Test deps, installable via `pip install .[test]`.
TEST_DEPS = [
    "psutil",
    "pytest",
    "pytest-instafail",
    "pytest-xdist",
    "setuptools",
]

if WINDOWS:
    TEST_DEPS.append("pywin32")

# Development deps, installable via `pip install .[dev]`.
DEV_DEPS = [
    "black",
    "check-manifest",
    "coverage",
    "pylint",
    "pytest-cov",
    "pytest-xdist",
    "rstcheck",
    "ruff",
    "toml-sort",
    "twine",
]
if WINDOWS:
    DEV_DEPS.extend(["pyreadline3", "pdbpp"])


def get_version():
    INIT = os.path.abspath(
        os.path.join(os.path.dirname(__file__), "pyftpguard", "__init__.py")
    )
    with open(INIT) as f:
        for line in f:
            if line.startswith("__ver__"):
                ret = ast.literal_eval(line.strip().split(" = ")[1])
                assert ret.count(".") == 2, ret
                for num in ret.split("."):
                    assert num.isdigit(), ret
                return ret
        raise ValueError("couldn't find version string")


here = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(here, "README.rst")) as f:
    long_description = f.read()


def main():
    from setuptools import setup  # noqa: PLC0415

    setup(
        name="pyftpguard",
        version=get_version(),
        description=(
            "Thread-per-connection FTP server with brute force and"
            " flood protection"
        ),
        long_description=long_description,
        long_description_content_type="text/x-rst",
        license="MIT",
        platforms="Platform Independent",
        author="Giampaolo Rodola'",
        author_email="g.rodola@gmail.com",
        packages=["pyftpguard", "pyftpguard.test"],
        # fmt: off
        keywords=["ftp", "server", "ftpd", "daemon", "python", "threads",
                  "rate-limit", "ban", "rfc959", "rfc1123", "rfc2389",
                  "rfc3659"],
        # fmt: on
        install_requires=["psutil"],
        extras_require={
            "dev": DEV_DEPS,
            "test": TEST_DEPS,
        },
        entry_points={
            "console_scripts": ["pyftpguard = pyftpguard.__main__:main"],
        },
        python_requires=">=3.10",
        zip_safe=False,
        classifiers=[
            "Development Status :: 4 - Beta",
            "Environment :: Console",
            "Intended Audience :: Developers",
            "Intended Audience :: System Administrators",
            "Operating System :: OS Independent",
            "Programming Language :: Python",
            "Topic :: Internet :: File Transfer Protocol (FTP)",
            "Topic :: Software Development :: Libraries :: Python Modules",
            "Topic :: System :: Filesystems",
            "Programming Language :: Python :: 3",
        ],
    )


if sys.version_info[0] < 3:  # noqa: UP036
    sys.exit("Python 2 is not supported.")

if __name__ == "__main__":
    main()
