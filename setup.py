from setuptools import setup, find_packages

with open("README.rst", "r") as f:
    readme = f.read()

setup(
    name="gyrolie",
    version="0.0.1",
    description="Gyroscope preintegration and attitude factors on SO(3) for batch state estimation.",
    long_description=readme,
    packages=find_packages(include=["gyrolie", "gyrolie.*"]),
    extras_require={"test": ["pytest"]},
    install_requires=[
        "numpy>=1.21.2",
        "scipy>=1.7.1",
        "joblib>=1.2.0",
        "tqdm>=4.64.1",
    ],
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
