from setuptools import setup, find_packages

setup(
    name="pulse_meter",
    version="0.1.0",
    description="Fingertip camera PPG heart-rate measurement engine",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.10",
        "opencv-python>=4.8",
    ],
    extras_require={
        "dev": ["pytest>=7.4"],
        "pi": ["picamera2>=0.3"],
    },
    entry_points={
        "console_scripts": [
            "pulse-meter=main:main",
        ]
    },
)
