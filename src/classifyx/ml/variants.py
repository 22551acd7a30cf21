"""Built-in classifier variants.

A variant fixes the ordered label set and the input geometry its model was
trained with. Label order is the contract with the model output: index ``i``
of the score vector belongs to ``labels[i]``.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ClassifierVariant:
    """Static metadata for a single classifier."""

    name: str
    title: str
    description: str
    labels: tuple[str, ...]
    width: int
    height: int
    channels: int
    model_filename: str

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        """Tensor shape the model expects, batch first."""
        return (1, self.height, self.width, self.channels)


VARIANTS: dict[str, ClassifierVariant] = {
    "fashion": ClassifierVariant(
        name="fashion",
        title="Clothing Classifier",
        description=(
            "Classifies a photo of a single garment into one of the ten Fashion-MNIST categories."
        ),
        labels=(
            "T-shirt/top",
            "Trouser",
            "Pullover",
            "Dress",
            "Coat",
            "Sandal",
            "Shirt",
            "Sneaker",
            "Bag",
            "Ankle boot",
        ),
        width=28,
        height=28,
        channels=1,
        model_filename="fashion_cnn.onnx",
    ),
    "brain_tumor": ClassifierVariant(
        name="brain_tumor",
        title="Brain Tumor Classifier",
        description=(
            "Classifies a brain MRI scan as Glioma, Healthy, Meningioma or Pituitary "
            "using a convolutional neural network trained on MRI data."
        ),
        labels=("Glioma", "Healthy", "Meningioma", "Pituitary"),
        width=150,
        height=150,
        channels=3,
        model_filename="brain_tumor_cnn.onnx",
    ),
}


def get_variant(name: str) -> ClassifierVariant:
    """Look up a variant by name."""
    try:
        return VARIANTS[name]
    except KeyError:
        raise KeyError(f"Unknown classifier variant: {name}") from None
