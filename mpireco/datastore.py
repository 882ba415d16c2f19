"""Directory of HDF5 files holding finished reconstructions, keyed by their parameters."""

import json
import logging
import h5py
import numpy as np
import xarray as xr
from pathlib import Path
from typing import List, Optional, Union

from .exceptions import ConfigurationError
from .params import RecoParams

logger = logging.getLogger(__name__)

# Options that do not change the reconstructed values.
IGNORED_KEYS = ('progress', 'device')

Image = Union[xr.DataArray, List[xr.DataArray]]


def params_key(params: RecoParams) -> str:
    """Canonical JSON of the parameters that determine a reconstruction."""
    d = params.to_dict()
    for key in IGNORED_KEYS:
        d.pop(key, None)
    return json.dumps(d, sort_keys=True)


class DatasetStore:
    """
    Stores reconstructions as `reco_<id>.h5` files in one directory.

    Each file holds one or more images (group `images/<i>`) with their
    coordinates, dims and header, and the canonical parameter JSON in the
    root attribute `params`.
    """
    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, reco_id: int) -> Path:
        return self.directory / f"reco_{reco_id}.h5"

    def ids(self) -> List[int]:
        ids = []
        for p in self.directory.glob("reco_*.h5"):
            try:
                ids.append(int(p.stem.split('_', 1)[1]))
            except ValueError:
                logger.debug("Ignoring unrelated file %s", p)
        return sorted(ids)

    def find_reconstruction(self, params: RecoParams) -> Optional[int]:
        key = params_key(params)
        for reco_id in self.ids():
            with h5py.File(self._path(reco_id), 'r') as f:
                if f.attrs.get('params') == key:
                    logger.info("Found stored reconstruction %d in %s", reco_id, self.directory)
                    return reco_id
        logger.info("No stored reconstruction matches the parameters in %s", self.directory)
        return None

    def load_reconstruction(self, reco_id: int) -> Image:
        path = self._path(reco_id)
        if not path.exists():
            raise ConfigurationError(f"Reconstruction {reco_id} does not exist in {self.directory}.")
        with h5py.File(path, 'r') as f:
            group = f['images']
            images = [self._read_image(group[str(i)]) for i in range(len(group))]
            params = json.loads(f.attrs['params'])
            is_list = bool(f.attrs['is_list'])
        for im in images:
            im.attrs['recoParams'] = params
        return images if is_list else images[0]

    def save_reconstruction(self, params: RecoParams, image: Image) -> int:
        ids = self.ids()
        reco_id = ids[-1] + 1 if ids else 0
        images = image if isinstance(image, (list, tuple)) else [image]
        with h5py.File(self._path(reco_id), 'w') as f:
            f.attrs['params'] = params_key(params)
            f.attrs['is_list'] = isinstance(image, (list, tuple))
            group = f.create_group('images')
            for i, im in enumerate(images):
                self._write_image(group.create_group(str(i)), im)
        logger.info("Saved reconstruction %d to %s", reco_id, self.directory)
        return reco_id

    @staticmethod
    def _write_image(group, image: xr.DataArray) -> None:
        group.create_dataset('data', data=image.values)
        group.attrs['dims'] = json.dumps(list(image.dims))
        attrs = {k: v for k, v in image.attrs.items() if k != 'recoParams'}
        group.attrs['header'] = json.dumps(attrs, default=str)
        coords = group.create_group('coords')
        for dim in image.dims:
            coords.create_dataset(dim, data=np.asarray(image.coords[dim].values))

    @staticmethod
    def _read_image(group) -> xr.DataArray:
        dims = json.loads(group.attrs['dims'])
        coords = {dim: group['coords'][dim][()] for dim in dims}
        attrs = json.loads(group.attrs['header'])
        return xr.DataArray(group['data'][()], dims=dims, coords=coords, attrs=attrs)
