from setuptools import setup, find_packages

setup(
    name="cairn-verify",
    version="0.1.0",
    description="CAIRN — modular, annotation-driven verifier for storage contracts",
    packages=find_packages(include=["cairn", "cairn.*"]),
    python_requires=">=3.10",
    install_requires=[
        "z3-solver>=4.12.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "cairn=cairn.cli:main",
        ],
    },
)
