from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="nanovlm-preprocessing",
    version="0.1.0",
    description="Image tiling and prompt tokenization for small vision-language models",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*", "scripts"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "torch>=2.5.1",
        "torchvision>=0.20.1",
        "transformers>=4.50.0",
        "einops>=0.8.0",
        # Configuration
        "omegaconf>=2.3.0",
        # Images
        "Pillow>=11.0.0",
        "numpy>=1.22.0",
        # Tokenization
        "tokenizers>=0.20.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "ruff>=0.0.200",
            "isort>=5.12.0",
        ],
        "all": [
            "nanovlm-preprocessing[dev]",
        ],
    },
)
