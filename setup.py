import os
import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()


def read(fname):
    return open(os.path.join(os.path.dirname(__file__), fname)).read()


requirements = read("requirements.txt").split()

setuptools.setup(
    name="fhirsearch",
    version="0.1.0",
    author="Arkhn",
    author_email="contact@arkhn.org",
    description="FHIR search over clinical records stored in MongoDB",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/arkhn/fhirsearch/",
    packages=setuptools.find_packages(exclude=["test", "test.*"]),
    install_requires=requirements,
    extras_require={"test": ["pytest", "mongomock"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
)
