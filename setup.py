"""Build PeerLink package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peerlink",
    version="0.1.0",
    description=(
        "Peer-to-peer messaging channels negotiated through a shared "
        "signaling store"
    ),
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["peerlink", "peerlink.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.5.0",
        "click",
        "cryptography",
        "pydantic>=2",
        "redis>=5.0.1",
        "requests>=2.27.1",
        "tomli ; python_version<'3.11'",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-asyncio>=0.23.2",
            "uvloop",
        ],
    },
    entry_points={
        "console_scripts": [
            "peerlink=peerlink.cli:cli",
        ],
    },
)
