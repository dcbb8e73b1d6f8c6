from setuptools import setup, find_packages

setup(
    name="snapcap",
    version="0.1.0",
    description="Camera previews, loopback HLS streams and snapshot bursts driven by ffmpeg",
    author="SnapCap",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    include_package_data=True,
    install_requires=[
        "av>=12.3.0",
        "Pillow>=10.4.0",
        "PyYAML>=5.3.1",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.8",
    entry_points={
        "console_scripts": [
            "snapcap=snapcap.main:main",
        ],
    },
)
