import re

import setuptools

# Read the version without importing the package, its dependencies are not installed yet
with open("pyenvoy/__init__.py", "r") as fh:
    version_tuple = re.search(r"^version_tuple = \((\d+), (\d+), (\d+)\)", fh.read(), re.M).groups()
__version__ = '.'.join(version_tuple)

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="pyenvoy",
    version=__version__,
    description="Python module and Prometheus exporter for Enphase Envoy solar gateways",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(),
    install_requires=[
        'requests',
        'urllib3',
        'python-dotenv',
        'beautifulsoup4>=4.11',
        'prometheus_client',
        'PyYAML',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'envoy-exporter=pyenvoy.exporter.server:main',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
