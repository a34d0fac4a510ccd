# setup.py
from setuptools import setup, find_packages

setup(
    name="antimev",
    version="0.1.0",
    packages=find_packages(include=["antimev", "antimev.*"]),
    python_requires=">=3.10",
    install_requires=[
        "msgpack",             # state and block encoding
        "plyvel",              # LevelDB state storage
        "cryptography",        # ECDSA keys and signatures
        "pycryptodome",        # keccak hashing
        "prometheus-client",   # metrics
        "psutil",              # monitoring
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "antimev=antimev.cli:main",
        ],
    },
)
