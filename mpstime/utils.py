import string
import networkx as nx
import matplotlib.pyplot as plt

class EinsumLabeler:
    """Hands out einsum letters for arbitrary string labels, one letter per distinct label."""
    def __init__(self):
        self.mapping = {}

    def __getitem__(self, label):
        if label not in self.mapping:
            if len(self.mapping) >= len(string.ascii_letters):
                raise ValueError("Too many distinct labels for a single einsum expression")
            self.mapping[label] = string.ascii_letters[len(self.mapping)]
        return self.mapping[label]

    def __len__(self):
        return len(self.mapping)

def visualize_mps(mps, show=True):
    """
    Visualize the MPS as a chain graph.

    Every site is drawn as a node annotated with its shape, bonds are drawn as edges annotated
    with their dimension. The site carrying the class label is highlighted.

    Parameters:
        mps: The MPS to draw.
        show: Call plt.show() after drawing.
    """
    G = nx.Graph()
    label_site = mps.label_site()

    for i in range(len(mps)):
        G.add_node(i, shape=tuple(mps[i].shape))
    for i in range(len(mps) - 1):
        G.add_edge(i, i + 1, size=mps[i].dim_size(mps.bond_label(i)))

    pos = {i: (2 * i, 0) for i in range(len(mps))}
    colors = ['salmon' if i == label_site else 'lightblue' for i in G.nodes]

    fig = plt.figure(figsize=(max(6, len(mps)), 3))
    nx.draw(G, pos, with_labels=False, node_size=1500, node_color=colors)

    labels = {node: f"{node}\n{G.nodes[node]['shape']}" for node in G.nodes}
    nx.draw_networkx_labels(G, pos, labels=labels, font_size=8)

    edge_labels = {(u, v): f"{d['size']}" for u, v, d in G.edges(data=True)}
    nx.draw_networkx_edge_labels(G, pos, edge_labels=edge_labels, font_size=8)

    plt.title("MPS Visualization")
    if show:
        plt.show()
    return fig

def plot_training_summary(history, splits=('train', 'test'), show=True):
    """Plots loss, accuracy and KL divergence per sweep for the given splits of a TrainingHistory."""
    frame = history.to_frame()
    fig, axes = plt.subplots(1, 3, figsize=(15, 4))
    for ax, metric in zip(axes, ('loss', 'acc', 'kl_div')):
        for split in splits:
            column = f'{split}_{metric}'
            if column in frame and frame[column].notna().any():
                ax.plot(frame.index, frame[column], marker='o', label=split)
        ax.set_xlabel('Sweep')
        ax.set_ylabel(metric)
        ax.grid(True)
        ax.legend()
    fig.tight_layout()
    if show:
        plt.show()
    return fig
