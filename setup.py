from setuptools import setup, find_packages

setup(
    name="recsys-experimentation",
    version="1.0.0",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.9",
    install_requires=[
        "pandas>=1.5.0",
        "numpy>=1.25.0",
        "scipy>=1.7.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
    ],
    extras_require={
        "test": ["pytest>=7.0.0"],
    },
)
