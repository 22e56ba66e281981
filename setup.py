"""Setup configuration for phenoharm package"""

from setuptools import setup, find_packages

setup(
    name="phenoharm",
    version="0.1.0",
    author="phenoharm Development Team",
    description="Cross-study phenotype harmonization diagnostics with relatedness-aware mixed models",
    long_description=open("README.md").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*", "scripts", "examples"]),
    install_requires=[
        "numpy>=1.19.0",
        "scipy>=1.6.0",
        "pandas>=1.2.0",
        "h5py>=3.0.0",
        "statsmodels>=0.12.0",
        "matplotlib>=3.3.0",
        "seaborn>=0.11.0",
        "requests>=2.25.0",
        "tqdm>=4.60.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
)
