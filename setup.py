#!/usr/bin/env python

import setuptools

setuptools.setup(
    name="localcaption",
    version="0.1.0",
    description="Batch image captioning with locally executed vision-language models.",
    packages=setuptools.find_packages(include=["localcaption", "localcaption.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    install_requires=['httpx>=0.24',
                      'Pillow>=9.3.0',
                      'PyYAML>=5.3',
                      'termcolor>=2.0',
                      'colorama>=0.4.6; platform_system=="Windows"',
                      ],
    extras_require={
        'llama': ['llama-cpp-python>=0.2.60'],
        'test': ['pytest>=7'],
    },
    python_requires='>=3.10',

    entry_points={
        'console_scripts': [
            'localcaption = localcaption.cli:main',
        ],
    },


)
