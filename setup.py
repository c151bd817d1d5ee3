import os
from setuptools import setup

short_desc = "Content-addressed package builds with signed binary archives"

try:
    fname = 'README.rst'
    with open(os.path.join(os.path.dirname(__file__), fname)) as f:
        long_desc = f.read()
except IOError:
    long_desc = short_desc

setup(
    name="cardist",
    version="0.1",
    author="cardist developers",
    description=(short_desc),
    license="BSD",
    keywords="package management reproducible builds binary archives",
    python_requires=">=3.9",
    packages=[
          'cardist',
          'cardist.core',
          'cardist.core.test',
          'cardist.util',
          ],
    package_data={
        "cardist.util": ["logging_config.yaml"],
        },
    install_requires=[
        "PyYAML",
        "jsonschema",
        "requests",
        "base58",
        "PyNaCl",
        ],
    extras_require={
        "test": ["pytest", "mock"],
        },
    long_description=long_desc,
    classifiers=[
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Topic :: System :: Software Distribution",
    "License :: OSI Approved :: BSD License",
    "Programming Language :: Python :: 3",
    ],
)
