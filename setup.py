import os
import re

from setuptools import find_packages, setup


def get_version():
    init = os.path.join(os.path.dirname(__file__), "espwebflash", "__init__.py")
    with open(init, "r", encoding="utf-8") as f:
        return re.search(r'^__version__ = "(.*)"', f.read(), re.M).group(1)


entry_points = {
    "console_scripts": [
        "espwebflash=espwebflash.__init__:_main",
    ],
}

setup(
    name="espwebflash",
    version=get_version(),
    description="Serve ESP application images to the browser for Web Serial "
    "flashing with esp-web-tools",
    license="GPL-2.0-or-later",
    python_requires=">=3.10",
    packages=find_packages(include=["espwebflash", "espwebflash.*"]),
    package_data={"espwebflash": ["targets/bootloaders/*"]},
    include_package_data=True,
    install_requires=[
        "intelhex",
        "rich_click",
    ],
    extras_require={
        "test": [
            "pyelftools",
            "pytest",
        ],
    },
    entry_points=entry_points,
)
