"""Reading and writing SquashFS file system images with uncompressed blocks."""