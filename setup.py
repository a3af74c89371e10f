from setuptools import setup, find_packages

setup(
    name="queuectl",
    version="0.2",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=["click", "sqlalchemy>=2.0", "psutil"],
    extras_require={"test": ["pytest", "pytest-mock"]},
    entry_points={"console_scripts": ["queuectl = queuectl.cli:main"]},
)
