from setuptools import setup, find_packages

from systemdbus import VERSION

setup(
    name="systemdbus",
    description="Query and control systemd units and logind over the system bus",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    install_requires=[
        "systemd-python",
    ],
    extras_require={
        "test": [
            "hypothesis",
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "sdbusctl = systemdbus.programs.sdbusctl:main",
        ],
    },
    version=VERSION,
)
