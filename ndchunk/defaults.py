# maximum number of dimensions of an array
MAX_DIM = 8

# largest item size the blosc shuffle filter accepts
MAX_ITEMSIZE = 255

# for persistence
meta_key = ".ndarray"
chunk_suffix = ".chunk"
