import numbers

from ndchunk.errors import BoundsCheckError, NegativeStepError, err_too_many_indices


def is_integer(x):
    return isinstance(x, numbers.Integral)


def is_slice(s):
    return isinstance(s, slice)


def normalize_integer_selection(dim_sel, dim_len):

    # normalize type to int
    dim_sel = int(dim_sel)

    # handle wraparound
    if dim_sel < 0:
        dim_sel = dim_len + dim_sel

    # handle out of bounds
    if dim_sel >= dim_len or dim_sel < 0:
        raise BoundsCheckError(dim_len)

    return dim_sel


def normalize_slice_selection(dim_sel, dim_len):
    start, stop, step = dim_sel.indices(dim_len)
    if step != 1:
        raise NegativeStepError()
    return start, max(start, stop)


def check_selection_length(selection, shape):
    if len(selection) > len(shape):
        err_too_many_indices(selection, shape)


def ensure_tuple(v):
    if not isinstance(v, tuple):
        v = (v,)
    return v


def replace_ellipsis(selection, shape):

    selection = ensure_tuple(selection)

    # count number of ellipsis present
    n_ellipsis = sum(1 for i in selection if i is Ellipsis)

    if n_ellipsis > 1:
        # more than 1 is an error
        raise IndexError("an index can only have a single ellipsis ('...')")

    elif n_ellipsis == 1:
        # locate the ellipsis, count how many items to left and right
        n_items_l = selection.index(Ellipsis)  # items to left of ellipsis
        n_items_r = len(selection) - (n_items_l + 1)  # items to right of ellipsis
        n_items = len(selection) - 1  # all non-ellipsis items

        if n_items >= len(shape):
            # ellipsis does nothing, just remove it
            selection = tuple(i for i in selection if i is not Ellipsis)

        else:
            # replace ellipsis with as many slices are needed for number of dims
            new_item = selection[:n_items_l] + ((slice(None),) * (len(shape) - n_items))
            if n_items_r:
                new_item += selection[-n_items_r:]
            selection = new_item

    # fill out selection if not completely specified
    if len(selection) < len(shape):
        selection += (slice(None),) * (len(shape) - len(selection))

    # check selection not too long
    check_selection_length(selection, shape)

    return selection


class BasicSelection:
    """A selection made of integers and unit-step slices, resolved to a
    hyperrectangle of the array.

    Attributes
    ----------
    start, stop : tuple of ints
        The selected range, one entry per array dimension.
    drop_axes : tuple of ints
        Dimensions selected by an integer, absent from the result shape.
    shape : tuple of ints
        Shape of the selected data once `drop_axes` are removed.
    """

    def __init__(self, selection, shape):

        # handle ellipsis
        selection = replace_ellipsis(selection, shape)

        start, stop, drop_axes = [], [], []
        for axis, (dim_sel, dim_len) in enumerate(zip(selection, shape)):

            if is_integer(dim_sel):
                lo = normalize_integer_selection(dim_sel, dim_len)
                hi = lo + 1
                drop_axes.append(axis)

            elif is_slice(dim_sel):
                lo, hi = normalize_slice_selection(dim_sel, dim_len)

            else:
                raise IndexError('unsupported selection item for basic indexing; '
                                 'expected integer or slice, got {!r}'
                                 .format(type(dim_sel)))

            start.append(lo)
            stop.append(hi)

        self.start = tuple(start)
        self.stop = tuple(stop)
        self.drop_axes = tuple(drop_axes)
        self.range_shape = tuple(hi - lo for lo, hi in zip(self.start, self.stop))
        self.shape = tuple(n for axis, n in enumerate(self.range_shape)
                           if axis not in self.drop_axes)
