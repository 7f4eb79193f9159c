"""win2cloud: build Windows cloud images with QEMU and qemu-img."""

__version__ = "0.1.0"
