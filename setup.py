"""Build peerfetch package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peerfetch",
    version="0.1.0",
    description="Fetch URLs through remote exit nodes over WebRTC",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Framework :: AsyncIO",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=[
        "aiortc>=1.5.0",
        "cryptography>=39.0.1",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=13",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-asyncio>=0.23.2",
        ],
    },
)
