import os
import sys
import setuptools
from setuptools.command.install import install

# The version of this package
VERSION = "0.1.0"


class VerifyVersionCommand(install):
    """
    Custom command to verify that the git tag matches the package version.
    Source: https://circleci.com/blog/continuously-deploying-python-packages-to-pypi-with-circleci/
    """

    description = "verify that the git tag matches the package version"

    def run(self):
        tag = os.getenv("CIRCLE_TAG")

        if tag != VERSION:
            info = f"Git tag: {tag} does not match the version of this package: {VERSION}"
            sys.exit(info)


with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="redis-entity-store",
    version=VERSION,
    description="Persist pydantic models to Redis hashes without writing marshalling code",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["test", "test.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0",
        "numpy>=1.21",
        "loguru>=0.5.1",
    ],
    extras_require={
        "redis": ["redis>=4.2"],
        "test": ["redis>=4.2", "fakeredis>=2.10", "pytest>=7.0"],
    },
    cmdclass={"verify": VerifyVersionCommand},
)
