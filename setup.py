import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

with open("VERSION", "r") as fh:
    version = fh.read().strip()

setuptools.setup(
    name="sou",
    version=version,
    description="Container image layer materialization and browsing",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "lib"},
    packages=setuptools.find_packages("lib"),
    python_requires=">=3.9",
    install_requires=[
        "click",
        "humanfriendly",
        "humanize",
    ],
    extras_require={
        "test": [
            "filelock",
            "pytest",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3.9",
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
        "Operating System :: OS Independent",
    ],
    entry_points={
        "console_scripts": [
            "sou-layer = sou.cli.layer:main",
        ]
    },
)
