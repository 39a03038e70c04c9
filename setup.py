"""Setup script for cryptbatch"""
from setuptools import setup
from pathlib import Path
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""
setup(
    name="cryptbatch",
    version="1.0.0",
    author="cryptbatch Project",
    description="Batch file and folder encryption with streaming writes and per-file failure reporting",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["cryptbatch", "cryptbatch_engine", "cryptbatch_store", "cryptbatch_cli"],
    python_requires=">=3.9",
    install_requires=["cryptography>=41.0.0"],
    extras_require={
        "progress": ["tqdm>=4.60.0", "rich>=12.0.0"],
        "dev": ["pytest>=6.0.0", "black>=22.0.0", "flake8>=4.0.0", "pytest-asyncio"],
        "full": ["tqdm>=4.60.0", "rich>=12.0.0"],
    },
    entry_points={
        "console_scripts": [
            "cryptbatch=cryptbatch_cli:cli_main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Security :: Cryptography",
        "Topic :: Utilities",
    ],
)
